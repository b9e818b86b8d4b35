"""
API Key 保险箱

明文 Key 只在 get_key 的返回值中出现：存储的是 AES-256-GCM 密文（nonce 与密文分别 base64），
日志只打 record id。
"""

from __future__ import annotations

import base64
import os
import uuid
from dataclasses import dataclass, replace
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from app.lab.entities import APIKeyRecord
from app.lab.enums import Provider
from app.lab.errors import APIKeyError
from app.lab.sandbox.session import utcnow

SHARED_KEY_OWNER = "shared"
NONCE_SIZE = 12


@dataclass
class _StoredKey:
    record: APIKeyRecord
    ciphertext: str
    nonce: str


class APIKeyManager:
    def __init__(self, encryption_key_hex: str, *, shared_openai_key: Optional[str] = None):
        try:
            key = bytes.fromhex(encryption_key_hex or "")
        except ValueError as exc:
            raise ValueError("LAB_ENCRYPTION_KEY must be a 256-bit (64 hex chars) value") from exc
        if len(key) != 32:
            raise ValueError("LAB_ENCRYPTION_KEY must be a 256-bit (64 hex chars) value")

        self._cipher = AESGCM(key)
        self._storage: dict[str, _StoredKey] = {}

        if shared_openai_key:
            record = self.store_key(
                SHARED_KEY_OWNER,
                Provider.openai,
                shared_openai_key,
                alias="Educational Shared Key",
                is_shared=True,
            )
            logger.info(f"[APIKeyManager] 已加载共享 OpenAI Key: id={record.id}")

    def store_key(
        self,
        user_id: str,
        provider: Provider,
        key: str,
        *,
        alias: Optional[str] = None,
        is_shared: bool = False,
    ) -> APIKeyRecord:
        if not key:
            raise APIKeyError("API key is required to store a record")

        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._cipher.encrypt(nonce, key.encode("utf-8"), None)

        record = APIKeyRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=Provider(provider),
            alias=alias,
            is_shared=bool(is_shared),
            created_at=utcnow(),
        )
        self._storage[record.id] = _StoredKey(
            record=record,
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
        )
        logger.info(f"[APIKeyManager] 保存 Key: id={record.id}, user={user_id}, provider={record.provider.value}")
        return record

    def get_key(self, record_id: str, user_id: str) -> str:
        stored = self._storage.get(record_id)
        if stored is None:
            raise APIKeyError("API key record not found", {"recordId": record_id})

        if not stored.record.is_shared and stored.record.user_id != user_id:
            raise APIKeyError("Access denied for API key", {"recordId": record_id, "userId": user_id})

        try:
            plaintext = self._cipher.decrypt(
                base64.b64decode(stored.nonce),
                base64.b64decode(stored.ciphertext),
                None,
            )
        except InvalidTag as exc:
            raise APIKeyError("API key record is corrupted", {"recordId": record_id}) from exc

        stored.record = replace(stored.record, last_used_at=utcnow())
        return plaintext.decode("utf-8")

    def get_record(self, record_id: str) -> Optional[APIKeyRecord]:
        stored = self._storage.get(record_id)
        return stored.record if stored else None

    def list_keys(self, user_id: str, include_shared: bool = True) -> list[APIKeyRecord]:
        return [
            stored.record
            for stored in self._storage.values()
            if stored.record.user_id == user_id or (include_shared and stored.record.is_shared)
        ]

    def rotate_key(self, record_id: str, new_key: str, user_id: str) -> APIKeyRecord:
        stored = self._storage.get(record_id)
        if stored is None:
            raise APIKeyError("API key record not found", {"recordId": record_id})

        if stored.record.user_id != user_id:
            raise APIKeyError("Only the owner can rotate a key", {"recordId": record_id, "userId": user_id})

        updated = self.store_key(
            user_id,
            stored.record.provider,
            new_key,
            alias=stored.record.alias,
            is_shared=stored.record.is_shared,
        )
        del self._storage[record_id]
        logger.info(f"[APIKeyManager] 轮换 Key: old={record_id}, new={updated.id}")
        return updated

    def find_shared_key(self, provider: Provider) -> Optional[APIKeyRecord]:
        for stored in self._storage.values():
            if stored.record.is_shared and stored.record.provider == Provider(provider):
                return stored.record
        return None

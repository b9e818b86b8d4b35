from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from loguru import logger

from app.lab.constants import DEFAULT_RESOURCE_LIMITS
from app.lab.entities import (
    ExperimentSessionSnapshot,
    ResourceLimits,
    SessionConfig,
    SessionMetrics,
)
from app.lab.errors import SessionNotFoundError
from app.lab.sandbox.session import ExperimentSession, utcnow


class SandboxManager:
    """
    沙箱会话注册表

    会话只在进程内存中存在，管理器独占 session map；
    过期会话不会自动回收，由 SessionSweeper 定时调用 purge_expired_sessions。
    """

    def __init__(self, resource_limits: Optional[ResourceLimits] = None):
        self._resource_limits = resource_limits or DEFAULT_RESOURCE_LIMITS
        self._sessions: dict[str, ExperimentSession] = {}

    @property
    def resource_limits(self) -> ResourceLimits:
        return self._resource_limits

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(
        self,
        user_id: str,
        config: SessionConfig,
        experiment_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ExperimentSessionSnapshot:
        session_id = str(uuid.uuid4())
        session = ExperimentSession(
            session_id,
            user_id,
            config,
            experiment_id=experiment_id,
            resource_limits=self._resource_limits,
            created_at=now or utcnow(),
        )
        self._sessions[session_id] = session
        logger.info(
            f"[SandboxManager] 创建会话: session={session_id}, user={user_id}, "
            f"provider={config.provider.value}, experiment={experiment_id}"
        )
        return session.to_snapshot()

    def get_session(self, session_id: str, *, now: Optional[datetime] = None) -> ExperimentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError({"sessionId": session_id})
        session.ensure_active(now or utcnow())
        return session

    def terminate_session(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError({"sessionId": session_id})
        session.terminate()
        del self._sessions[session_id]
        logger.info(f"[SandboxManager] 终止会话: session={session_id}")

    def get_session_metrics(self, session_id: str, *, now: Optional[datetime] = None) -> SessionMetrics:
        return self.get_session(session_id, now=now).to_metrics()

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired_ids = [sid for sid, session in self._sessions.items() if session.is_expired(now)]
        for sid in expired_ids:
            self._sessions[sid].terminate()
            del self._sessions[sid]
        if expired_ids:
            logger.info(f"[SandboxManager] 清理过期会话: count={len(expired_ids)}")
        return len(expired_ids)

"""
实验室错误类型

所有错误都是可恢复的业务错误，统一为 LabError，用 kind 区分类别；
边界层（API）只按 kind 查表映射状态码，不依赖具体子类。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class LabErrorKind(str, Enum):
    session_not_found = "SESSION_NOT_FOUND"
    resource_limit = "RESOURCE_LIMIT"
    provider_unavailable = "PROVIDER_UNAVAILABLE"
    provider_error = "PROVIDER_ERROR"
    key_error = "KEY_ERROR"


class LabError(Exception):
    def __init__(
        self,
        kind: LabErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.kind.value, "message": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class SessionNotFoundError(LabError):
    def __init__(self, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(LabErrorKind.session_not_found, "沙箱会话不存在", details)


class ResourceLimitError(LabError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(LabErrorKind.resource_limit, message, details)


class ProviderUnavailableError(LabError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(LabErrorKind.provider_unavailable, message, details)


class ProviderExecutionError(LabError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(LabErrorKind.provider_error, message, details)


class APIKeyError(LabError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(LabErrorKind.key_error, message, details)


class ExperimentNotFoundError(LookupError):
    """实验不存在（不属于 LabErrorKind，边界层单独映射为 404）"""

    def __init__(self, experiment_id: str) -> None:
        super().__init__("Experiment not found")
        self.experiment_id = experiment_id

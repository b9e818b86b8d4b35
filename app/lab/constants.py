from __future__ import annotations

from app.lab.entities import ResourceLimits

DEFAULT_RESOURCE_LIMITS = ResourceLimits(
    max_concurrent_sessions=3,
    max_calls_per_session=200,
    max_tokens_per_session=200_000,
    max_session_duration_ms=1000 * 60 * 30,  # 30 分钟
)

# 过期后再保留 5 分钟才允许清理
SESSION_EXPIRY_GRACE_MS = 1000 * 60 * 5

TOKENS_PER_BLOCK = 1000

# 粗略估算：约 4 个字符 = 1 token
CHARS_PER_TOKEN = 4

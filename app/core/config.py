# 读取 .env 配置
from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.lab.entities import ResourceLimits

# 先把 .env 灌进进程环境变量，供 uvicorn 等外部组件读取
load_dotenv()


class Settings(BaseSettings):
    # Database（优先 LAB_DATABASE_URL，其次 DATABASE_URL）
    LAB_DATABASE_URL: str = Field(
        default="sqlite:///./lab.db",
        validation_alias=AliasChoices("LAB_DATABASE_URL", "DATABASE_URL"),
    )

    # API Key 加密（AES-256-GCM，64 位 hex）
    LAB_ENCRYPTION_KEY: str = ""
    LAB_SHARED_OPENAI_KEY: str = ""

    # 沙箱资源上限
    LAB_MAX_CONCURRENT_SESSIONS: int = 3
    LAB_MAX_CALLS_PER_SESSION: int = 200
    LAB_MAX_TOKENS_PER_SESSION: int = 200_000
    LAB_MAX_SESSION_DURATION_MS: int = 1000 * 60 * 30

    # Provider 调用超时（秒）
    LAB_PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # 过期会话清理间隔（秒），<= 0 表示不启动清理循环
    LAB_SWEEP_INTERVAL_SECONDS: float = 60.0

    # 日志
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    DEBUG: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore" # 忽略多余的环境变量
    )

    def resource_limits(self) -> ResourceLimits:
        return ResourceLimits(
            max_concurrent_sessions=self.LAB_MAX_CONCURRENT_SESSIONS,
            max_calls_per_session=self.LAB_MAX_CALLS_PER_SESSION,
            max_tokens_per_session=self.LAB_MAX_TOKENS_PER_SESSION,
            max_session_duration_ms=self.LAB_MAX_SESSION_DURATION_MS,
        )


settings = Settings()

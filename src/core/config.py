"""Application settings and CORS configuration."""

import json
import os
from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Status narration the upstream writer interleaves with raw-text content.
DEFAULT_STATUS_PHRASES: tuple[str, ...] = (
    "构建完整上下文",
    "上下文消息",
    "开始增强AI写作",
    "更新记忆管理系统",
    "记忆库已更新",
    "记忆系统更新失败",
    "写作完成",
    "preparing",
    "writing",
    "context_ready",
    "memory_updated",
    "memory_stats",
    "updating_memory",
    "complete",
    "正在装配记忆库",
    "正在分析前置章节",
    "正在进行连贯性预检查",
    "正在构建AI写作提示词",
    "AI开始创作中",
    "正在保存章节",
    "正在生成章节概括",
    "正在更新记忆库",
    "开始写作章节",
    "准备写作环境",
    "开始AI写作",
    "正在装配",
    "正在分析",
    "正在构建",
    "正在进行",
    "正在保存",
    "正在生成",
    "正在更新",
    "🧠",
    "📚",
    "🔍",
    "⚡",
    "🤖",
    "💾",
    "📝",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env"), env_file_encoding="utf-8")

    # App
    APP_NAME: str = "ChapterFlow"
    ENVIRONMENT: str = "development"  # development | production | test

    # CORS
    # Accept list or CSV/JSON string from env; normalized to list[str] by validators
    CORS_ORIGINS: list[str] | str = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    ALLOW_CREDENTIALS: bool = True

    # Durable batch job records
    DATABASE_URL: str = "sqlite+aiosqlite:///./chapterflow.db"

    # Upstream writing service (chapter stream, persistence, summarization)
    UPSTREAM_BASE_URL: str = "http://localhost:8080/api"
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0
    # Retries for non-streaming upstream calls on 429/502/503/504 and transport errors
    UPSTREAM_RETRY_ATTEMPTS: int = 3
    UPSTREAM_RETRY_BACKOFF_SECONDS: float = 1.0

    # Stream protocol
    TERMINAL_EVENTS: list[str] = ["complete", "done"]
    STATUS_PHRASE_DENYLIST: list[str] = list(DEFAULT_STATUS_PHRASES)

    # Title extraction and prose formatting
    TITLE_DELIMITER: str = "$"
    UNTERMINATED_TITLE_POLICY: Literal["discard", "flush_as_body"] = "discard"
    PARAGRAPH_INDENT: str = "　　"

    # Batch orchestration timing (seconds)
    POLL_INTERVAL_SECONDS: float = 0.5
    GRACE_INTERVAL_SECONDS: float = 2.0
    UNIT_TIMEOUT_SECONDS: float = 15 * 60
    READINESS_TIMEOUT_SECONDS: float = 5 * 60
    MAX_BATCH_UNITS: int = 50
    BATCH_RESUME_ON_STARTUP: bool = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: object) -> list[str]:
        """Allow list, CSV string, or JSON array string for CORS origins."""
        if isinstance(v, list):
            return [str(i).strip() for i in v]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        "CORS_ORIGINS must be a CSV list or JSON array string"
                    ) from e
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON must be a list")
                return [str(i).strip() for i in parsed]
            # CSV fallback
            return [i.strip() for i in s.split(",") if i.strip()]
        raise ValueError("Invalid CORS_ORIGINS type; expected str or list[str]")

    @field_validator("TITLE_DELIMITER")
    @classmethod
    def _single_character_delimiter(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("TITLE_DELIMITER must be exactly one character")
        return v

    @model_validator(mode="after")
    def _validate_timing(self) -> "Settings":
        """Reject polling settings that could never make progress."""
        if isinstance(self.CORS_ORIGINS, str):
            self.CORS_ORIGINS = self.assemble_cors_origins(self.CORS_ORIGINS)
        if self.POLL_INTERVAL_SECONDS <= 0:
            raise ValueError("POLL_INTERVAL_SECONDS must be positive")
        if self.GRACE_INTERVAL_SECONDS < 0:
            raise ValueError("GRACE_INTERVAL_SECONDS must not be negative")
        if (
            self.UNIT_TIMEOUT_SECONDS < self.POLL_INTERVAL_SECONDS
            or self.READINESS_TIMEOUT_SECONDS < self.POLL_INTERVAL_SECONDS
        ):
            raise ValueError("Polling timeouts must be at least one poll interval")
        return self


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    # The Settings initializer accepts a runtime-only `_env_file` kwarg used by
    # pydantic-settings; mypy's stub doesn't allow this call argument.
    return Settings(_env_file=env_file or None)  # type: ignore[call-arg]

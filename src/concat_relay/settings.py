from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

load_dotenv()


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


class Settings(BaseModel):
    http_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("CONCAT_HTTP_TIMEOUT", "20")), gt=0
    )
    user_agent: str = Field(
        default_factory=lambda: _env("CONCAT_USER_AGENT", "concat-relay/0.1"), min_length=1
    )
    max_response_bytes: int = Field(
        default_factory=lambda: int(_env("CONCAT_MAX_RESPONSE_BYTES", str(10 * 1024 * 1024))), gt=0
    )
    cache_enabled: bool = Field(
        default_factory=lambda: _env("CONCAT_CACHE_ENABLED", "1") == "1"
    )
    cache_default_ttl_seconds: int = Field(
        default_factory=lambda: int(_env("CONCAT_CACHE_TTL", "3600")), ge=0
    )
    cache_max_entries: int = Field(
        default_factory=lambda: int(_env("CONCAT_CACHE_MAX_ENTRIES", "1000")), gt=0
    )
    default_content_type: str = Field(
        default_factory=lambda: _env("CONCAT_DEFAULT_CONTENT_TYPE", "text/javascript; charset=UTF-8")
    )
    log_level: str = Field(default_factory=lambda: _env("CONCAT_LOG_LEVEL", "INFO").upper())


def get_settings() -> Settings:
    # re-read env each time (good for tests)
    return Settings()

import re
from datetime import timedelta
from functools import lru_cache
from typing import Any, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|h|m|s))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": "hours", "m": "minutes", "s": "seconds", "ms": "milliseconds"}


def parse_duration(value: Any) -> Any:
    """Parse Go-style durations such as ``24h`` or ``1h30m``; other values pass through."""
    if not isinstance(value, str) or not _DURATION_RE.fullmatch(value.strip()):
        return value
    total = timedelta()
    for amount, unit in _DURATION_PART_RE.findall(value):
        total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
    return total


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        frozen=True,
    )

    env: Literal["local", "prod", "test"] = Field(default="local", alias="ENV")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8080, alias="PORT")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"], alias="CORS_ORIGINS")

    max_file_size: int = Field(default=25 * 1024 * 1024, gt=0, alias="MAX_FILE_SIZE")
    allowed_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "application/pdf"],
        alias="ALLOWED_TYPES",
    )
    chunk_size: int = Field(default=1024 * 1024, gt=0, alias="CHUNK_SIZE")

    storage_backend: Literal["local", "s3"] = Field(default="local", alias="STORAGE_BACKEND")
    storage_path: str = Field(default="./storage", alias="STORAGE_PATH")

    s3_endpoint: HttpUrl | None = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key: str = Field(default="change-me", alias="S3_ACCESS_KEY")
    s3_secret_key: str = Field(default="change-me", alias="S3_SECRET_KEY")
    s3_region: str | None = Field(default=None, alias="S3_REGION")
    s3_bucket: str = Field(default="fileuploader", alias="S3_BUCKET")
    s3_prefix: str = Field(default="files/", alias="S3_PREFIX")

    jwt_secret_key: str = Field(
        default="your-secret-key-change-in-production",
        min_length=1,
        validation_alias=AliasChoices("JWT_SECRET_KEY", "JWT_SECRET"),
    )
    access_token_expire_minutes: int = Field(
        default=24 * 60, gt=0, alias="ACCESS_TOKEN_EXPIRE_MINUTES"
    )
    token_expiration: timedelta | None = Field(default=None, alias="TOKEN_EXPIRATION")

    rate_limit_per_minute: int = Field(default=60, gt=0, alias="RATE_LIMIT")

    @field_validator("token_expiration", mode="before")
    @classmethod
    def _parse_token_expiration(cls, value: Any) -> Any:
        return parse_duration(value)

    @property
    def token_lifetime(self) -> timedelta:
        if self.token_expiration is not None:
            return self.token_expiration
        return timedelta(minutes=self.access_token_expire_minutes)


@lru_cache
def get_settings() -> Settings:
    return Settings()

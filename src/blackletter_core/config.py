from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_base_url: str = Field(alias="API_BASE_URL")
    api_key: SecretStr | None = Field(default=None, alias="API_KEY")
    user_id: str = Field(alias="USER_ID")
    projects_owner: str | None = Field(default=None, alias="PROJECTS_OWNER")

    http_timeout_s: float = Field(default=30.0, alias="HTTP_TIMEOUT_S")

    poll_interval_s: float = Field(default=5.0, alias="POLL_INTERVAL_S")
    poll_max_attempts: int | None = Field(default=None, alias="POLL_MAX_ATTEMPTS")

    cache_max_age_s: float | None = Field(default=None, alias="CACHE_MAX_AGE_S")

    max_upload_bytes: int = Field(default=100 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    def api_key_value(self) -> str | None:
        if self.api_key is None:
            return None
        return self.api_key.get_secret_value() or None


def load_settings() -> Settings:
    return Settings()

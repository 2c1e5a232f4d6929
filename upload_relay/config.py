from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "upload-relay"
    app_env: str = "dev"
    host: str = "0.0.0.0"
    port: int = 4000
    upload_dir: str = "uploads"
    ledger_filename: str = "metadata.jsonl"
    mount_prefix: str = "/uploads"
    allowed_origins: list[str] = ["http://localhost:3000"]
    max_upload_size_bytes: int = 50 * 1024 * 1024
    allowed_content_types: list[str] = ["image/*", "application/pdf"]
    body_read_timeout_seconds: float = 30.0
    body_total_timeout_seconds: float = 600.0
    # Uploader identity is not checked unless this is switched on.
    require_uploader: bool = False
    uploader_header: str = "X-Uploader-Id"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="RELAY_")

    @property
    def public_prefix(self) -> str:
        return "/" + self.mount_prefix.strip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()

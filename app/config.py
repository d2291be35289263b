from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "book-handoff"
    app_env: str = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3001
    storage_dir: str = "uploads"
    reset_storage_on_startup: bool = True
    max_upload_size_bytes: int = 400 * 1024 * 1024
    required_extension: str = ".epub"
    key_alphabet: str = "234689ACEFGHKLMNPRTXYZ"
    key_length: int = 4
    expire_delay_seconds: float = 30
    max_expire_duration_seconds: float = 2 * 60 * 60
    issuer_marker: str = "Kobo"
    kepubify_path: str = "kepubify"
    store_shards: int = 16

    model_config = SettingsConfigDict(env_file=".env", env_prefix="HANDOFF_")


@lru_cache
def get_settings() -> Settings:
    return Settings()

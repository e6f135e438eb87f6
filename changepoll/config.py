from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class AppConfig(BaseSettings):
    port: int = 8000
    api_endpoint: str = "http://127.0.0.1:9000/changes"

    storage_dir: str = "."
    storage_prefix: str = "monitor"

    polling_interval_ms: int = 30000
    lease_key: str = "processing"
    # Derived from the worst-case cycle when unset.
    lease_ttl_ms: Optional[int] = None
    max_batch_size: Optional[int] = None
    compact_after_commit: bool = False
    archive_file: Optional[str] = None
    autostart: bool = False

    api_timeout_sec: float = 30.0
    webhook_timeout_sec: float = 5.0
    storage_timeout_sec: float = 2.0

    retry_attempts: int = 3
    retry_min_timeout_sec: float = 1.0
    retry_max_timeout_sec: float = 5.0
    retry_factor: float = 2.0
    retry_jitter_sec: float = 0.0

    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

settings = AppConfig()

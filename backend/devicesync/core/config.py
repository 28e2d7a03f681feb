from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Device Identity Sync"
    VERSION: str = "0.1.0"
    DEBUG: bool = False

    # API settings
    API_V1_STR: str = "/api/v1"

    # CORS settings
    BACKEND_CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8000"
    ]

    # Storage
    DATA_DIR: str = "./app_data"
    DEVICE_STORE_DIR: str = "./app_data/devices"
    USER_REGISTRY_PATH: str = "./app_data/shared/user_registry.db"
    DEVICE_SHARD_PREFIX_LENGTH: int = 2

    # Recognition
    FRESHNESS_WINDOW_DAYS: int = 30
    SCAN_CACHE_TTL_SECONDS: int = 30
    DEVICE_INDEX_TTL_SECONDS: int = 300
    RECOGNITION_CACHE_SECONDS: int = 300

    # Verification
    VERIFICATION_TTL_MINUTES: int = 15
    VERIFICATION_CODE_LENGTH: int = 6
    VERIFICATION_SINGLE_USE: bool = True
    SMS_SENDER_NAME: str = "DeviceSync"

    # Sessions and housekeeping
    SESSION_DURATION_HOURS: int = 24
    CLEANUP_INTERVAL_SECONDS: int = 60

    # Sync
    SYNC_DEFAULT_LOOKBACK_DAYS: int = 30
    SYNC_INTERVAL_SECONDS: float = 30.0
    SYNC_HTTP_TIMEOUT_SECONDS: float = 10.0
    SYNC_SERVER_URL: Optional[str] = None

    # Client replica
    REPLICA_PATH: str = "./app_data/client/replica.db"
    REPLICA_FLUSH_DELAY_SECONDS: float = 1.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = os.getenv("DEBUG", "true").lower() == "true"
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))
    cors_origins_raw: str = os.getenv("CORS_ORIGINS", "*")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./smarthome.db")
    store_backend: str = os.getenv("STORE_BACKEND", "sql")
    store_root: str = os.getenv("STORE_ROOT", "smartHomeState")
    store_timeout: int = int(os.getenv("STORE_TIMEOUT", "10"))
    store_poll_interval: float = float(os.getenv("STORE_POLL_INTERVAL", "1.0"))
    firebase_database_url: str = os.getenv("FIREBASE_DATABASE_URL", "")
    firebase_auth_token: str | None = os.getenv("FIREBASE_AUTH_TOKEN") or None
    notifier_reconnect_delay: float = float(os.getenv("NOTIFIER_RECONNECT_DELAY", "1.0"))
    presence_timeout_ms: int = int(os.getenv("PRESENCE_TIMEOUT_MS", "30000"))
    presence_check_interval: float = float(os.getenv("PRESENCE_CHECK_INTERVAL", "5"))
    timer_min_seconds: int = int(os.getenv("TIMER_MIN_SECONDS", "1"))
    timer_max_seconds: int = int(os.getenv("TIMER_MAX_SECONDS", "86400"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in self.cors_origins_raw.split(",") if item.strip()]


settings = Settings()

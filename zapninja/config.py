from pathlib import Path
from urllib.parse import quote

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # =================================================================
    # PORT ALLOCATION
    # =================================================================
    BASE_PORT: int = 3000
    PORT_RANGE_SIZE: int = 100

    # =================================================================
    # SESSION PROCESS SUPERVISION (seconds)
    # =================================================================
    SESSION_COMMAND: str = "npm run dev"
    SESSION_WORKDIR: str | None = None
    HEALTH_CHECK_HOST: str = "127.0.0.1"
    HEALTH_CHECK_INTERVAL: float = 1.0
    HEALTH_CHECK_TIMEOUT: float = 2.0
    LAUNCH_TIMEOUT: float = 30.0
    STOP_GRACE_PERIOD: float = 10.0
    FORCE_KILL_WAIT: float = 5.0
    RESTART_SETTLE_DELAY: float = 2.0
    ORPHAN_SWEEP_INTERVAL: float = 60.0
    LOG_BUFFER_LINES: int = 500

    # =================================================================
    # ADMISSION CONTROL
    # =================================================================
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    TIMING_PURGE_INTERVAL: float = 3600.0
    SESSION_CONFIG_CACHE_SECONDS: float = 30.0

    # =================================================================
    # QUEUE BROKER (Redis)
    # =================================================================
    REDIS_URL: str | None = None
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str | None = None
    REDIS_DB: int = 0
    REDIS_MAX_CONNECTIONS: int = 20
    QUEUE_PREFIX: str = "zapninja"
    QUEUE_POLL_INTERVAL: float = 1.0
    QUEUE_STALL_TIMEOUT: float = 300.0  # lock lifetime; renewed every half while a handler runs
    QUEUE_SHUTDOWN_TIMEOUT: float = 15.0

    # =================================================================
    # DATABASE POOL SETTINGS (session configuration store)
    # =================================================================
    DATABASE_URL: str | None = None
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 5
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def redis_url(self) -> str:
        """Broker URL, preferring an explicit REDIS_URL over host/port/db parts."""
        if self.REDIS_URL:
            return self.REDIS_URL
        auth = f":{quote(self.REDIS_PASSWORD, safe='')}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config["timeout"] = 15.0

        return config


settings = Settings()

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    POSTGRES_USER: str = "tournament"
    POSTGRES_PASSWORD: str = "tournament"
    POSTGRES_DB: str = "tournament"
    POSTGRES_HOST: str = "db"
    # Overrides the POSTGRES_* settings when set (e.g. sqlite+aiosqlite for local runs)
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    API_VERSION: str = "v1"
    LOG_LEVEL: str = "INFO"

    # Base URL the game servers use to reach us (webhooks, match config)
    PUBLIC_BASE_URL: str = "http://localhost:3000"
    SERVER_TOKEN: str = "change-me"

    # Remote server handling
    # HTTP relay that forwards console commands to the game servers
    SERVER_RELAY_URL: Optional[str] = None
    SERVER_QUERY_TIMEOUT: float = 5.0
    SERVER_POLL_INTERVAL: float = 10.0
    SERVER_IDLE_GRACE_SECONDS: int = 0
    SERVER_POLLING_ENABLED: bool = True

    # Rating display mapping
    RATING_DISPLAY_OFFSET: int = 500
    RATING_DISPLAY_SCALE: int = 100
    RATING_MAX_DELTA: int = 100
    RATING_FLOOR: int = 0
    RATING_CEILING: int = 10000
    RATING_DEFAULT_SIGMA: float = 8.333
    RATING_MIN_SIGMA: float = 2.0
    DEFAULT_STARTING_ELO: int = 3000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:5432/{self.POSTGRES_DB}"
        )


Config = Settings()

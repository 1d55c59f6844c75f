# starlight/config.py
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging"] = "dev"
    TZ: str = "Europe/Chisinau"  # provider clock used for reservation_until

    # Bussystem
    BUSS_BASE_URL: str = "https://test-api.bussystem.eu/server"
    BUSS_LOGIN: str = ""
    BUSS_PASSWORD: str = ""
    BUSS_API_VERSION: str = "1.1"
    USE_MOCK_API: bool = True  # mock/live dispatch switch

    DEFAULT_LANG: str = "en"
    DEFAULT_CURRENCY: str = "EUR"

    # Transport
    REQUEST_TIMEOUT_SECONDS: float = 15.0
    REQUEST_RETRIES: int = 1

    # Search
    AUTOCOMPLETE_MIN_LENGTH: int = 2
    AUTOCOMPLETE_DEBOUNCE_MS: int = 300

    # Cache / sessions
    REDIS_URL: Optional[str] = None  # unset -> in-process query cache
    CACHE_SWEEP_INTERVAL_SECONDS: int = 300
    SESSION_TTL_SECONDS: int = 900  # 15 minutes journey session TTL

    # Orders
    ORDER_POLL_INTERVAL_SECONDS: float = 30.0

    # read .env and ignore any extra keys so this doesn't break again
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()

from functools import lru_cache
from pathlib import Path
from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Database
    DB_URL: str = "postgresql://postgres:password@db:5432/smartgo"
    DB_ECHO: bool = False  # Set to True for SQL query logging in development

    # Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Number of connections to maintain in pool
    DB_MAX_OVERFLOW: int = 20  # Maximum overflow connections beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Timeout in seconds to get connection from pool
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Gemini
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = ""  # operator-preferred model, tried before the fallbacks
    GEMINI_FALLBACK_MODELS: Union[List[str], str] = [
        "gemini-3.1-flash",
        "gemini-3-flash-preview",
        "gemini-2.5-flash",
    ]
    GEMINI_RETRY_DELAYS: Union[List[float], str] = [1.0, 2.0, 4.0]  # seconds, one entry per retry
    GEMINI_TEMPERATURE: float = 0.4
    GEMINI_CHAT_TEMPERATURE: float = 0.7

    # Itinerary rules
    MAX_TRIP_DAYS: int = 31
    SCHEDULE_DEFAULT_START: str = "09:00"
    SCHEDULE_DEFAULT_DURATION_MIN: int = 60
    SCHEDULE_GAP_MIN: int = 15  # travel/buffer minutes between consecutive stops

    # Chat
    CHAT_HISTORY_WINDOW: int = 12  # messages sent to the model with each turn
    CHAT_STORE_WINDOW: int = 40  # messages kept per trip transcript
    CHAT_FALLBACK_REPLY: str = "I can help adjust this trip. Tell me what to change."

    # Rate Limiting
    ENABLE_RATE_LIMITING: bool = True
    RATE_LIMIT_GENERATE: str = "5/minute"
    RATE_LIMIT_CHAT: str = "20/minute"
    RATE_LIMIT_READ: str = "60/minute"
    RATE_LIMIT_UPDATE: str = "30/minute"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "app.log"
    LOG_JSON: bool = True  # False renders coloured console lines for local development

    # CORS
    ALLOWED_ORIGINS: Union[list, str] = ["http://localhost:5173", "http://localhost:3000"]

    @field_validator('ALLOWED_ORIGINS', 'GEMINI_FALLBACK_MODELS', mode='before')
    @classmethod
    def parse_comma_list(cls, v):
        """Parse comma-separated strings from the environment into lists"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @field_validator('GEMINI_RETRY_DELAYS', mode='before')
    @classmethod
    def parse_retry_delays(cls, v):
        if isinstance(v, str):
            v = [item.strip() for item in v.split(',') if item.strip()]
        delays = [float(item) for item in v]
        if any(d < 0 for d in delays):
            raise ValueError('Retry delays cannot be negative')
        return delays

    @field_validator('SCHEDULE_DEFAULT_START')
    @classmethod
    def validate_default_start(cls, v: str) -> str:
        hours, _, minutes = v.partition(':')
        if not (hours.isdigit() and minutes.isdigit() and int(hours) < 24 and int(minutes) < 60):
            raise ValueError('SCHEDULE_DEFAULT_START must be HH:MM')
        return f"{int(hours):02d}:{int(minutes):02d}"

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parents[3] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

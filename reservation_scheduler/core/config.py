# reservation_scheduler/core/config.py

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Values come from the process environment; unknown keys are ignored so
    # the service can share a .env file with the rest of the platform.
    model_config = SettingsConfigDict(extra="ignore")

    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./reservations.db"

    # Kafka is optional; without it notifications are only logged
    KAFKA_BOOTSTRAP_SERVERS: Optional[str] = None
    KAFKA_RESERVATION_TOPIC: str = "reservation.events.v1"
    KAFKA_WAITLIST_TOPIC: str = "waitlist.events.v1"
    KAFKA_SEND_TIMEOUT_SECONDS: float = 10

    # --- Hold policy ---
    RESERVATION_TTL_HOURS: float = 48
    MAX_EXTENSIONS: int = 2
    EXPIRING_SOON_HOURS: float = 6

    # --- Sweep ---
    SWEEP_INTERVAL_SECONDS: int = 60
    SCHEDULER_ENABLED: bool = True

    # --- Waitlist policy ---
    WAITLIST_GRACE_HOURS: float = 24
    WAITLIST_GRACE_POLICY: Literal["requeue", "withdraw"] = "requeue"

    # --- Scoring ---
    # None means the full history counts towards the conversion rate
    SCORE_LOOKBACK_DAYS: Optional[int] = 30
    EXPERIENCE_SATURATION_MONTHS: float = 12

    @property
    def kafka_enabled(self) -> bool:
        return bool(self.KAFKA_BOOTSTRAP_SERVERS)


# Create a single instance of the settings
settings = Settings()

import logging
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Google Maps (Distance Matrix + Roads)
    GOOGLE_MAPS_API_KEY: str
    ORACLE_TIMEOUT_SECONDS: int = 10

    # Redis: session state, user accounts, scheduler registry
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # App
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Celery: background sampling
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    BACKGROUND_TASK_NAME: str = "trafficshare-location-task"
    BACKGROUND_SAMPLING_ENABLED: bool = True

    # Stuck detection
    STUCK_DISTANCE_THRESHOLD_METERS: float = 30.0
    STUCK_TIME_THRESHOLD_MS: int = 60_000

    # Oracle thresholds and throttles
    HEAVY_TRAFFIC_RATIO: float = 1.5
    MODERATE_TRAFFIC_RATIO: float = 1.10
    TRAFFIC_CHECK_DISTANCE_METERS: float = 30.0
    ON_ROAD_THRESHOLD_METERS: float = 10.0
    MIN_TRAFFIC_CALL_INTERVAL_MS: int = 60_000
    MIN_ROADS_CALL_INTERVAL_MS: int = 180_000

    # Point awards
    COOLDOWN_INTERVAL_MS: int = 300_000
    HEAVY_TRAFFIC_POINTS: int = 10
    MODERATE_TRAFFIC_POINTS: int = 5

    # Foreground
    PROJECTION_POLL_INTERVAL_SECONDS: float = 40.0
    FOREGROUND_WATCH_DISTANCE_INTERVAL_METERS: int = 50
    FOREGROUND_WATCH_TIME_INTERVAL_MS: int = 10_000


settings = Settings()


def configure_logging() -> None:
    """Configure root logger level and format from settings."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

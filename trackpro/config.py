from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (receiving side)
    DATABASE_URL: str = "sqlite+aiosqlite:///./trackpro.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    SLOW_QUERY_THRESHOLD_MS: int = 500

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Tracking API (client side)
    API_BASE_URL: str = "http://localhost:8000"
    API_TOKEN: str | None = None
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Realtime channel
    REALTIME_URL: str = "ws://localhost:8000/api/v2/ws"
    REALTIME_RECONNECT_DELAY_SECONDS: float = 1.0
    REALTIME_RECONNECT_DELAY_MAX_SECONDS: float = 5.0
    REALTIME_MAX_RECONNECT_ATTEMPTS: int = 5

    # Routing capability
    GOOGLE_MAPS_API_KEY: str | None = None
    DIRECTIONS_URL: str = "https://maps.googleapis.com/maps/api/directions/json"

    # Sampler
    SENSOR_TIMEOUT_MS: int = 15000
    SENSOR_MAXIMUM_AGE_MS: int = 0  # Always get a fresh reading
    SENSOR_TIMEOUT_BACKOFF_SECONDS: float = 5.0
    SENSOR_UNAVAILABLE_BACKOFF_SECONDS: float = 1.0
    SENSOR_MAX_RETRIES: int = 5

    # Adaptive scheduler
    UPDATE_INTERVAL_MS: int = 2000
    STATIONARY_INTERVAL_MS: int = 30000
    HIGH_SPEED_INTERVAL_MS: int = 1000
    BACKGROUND_UPDATE_INTERVAL_MS: int = 15000
    INTERVAL_HYSTERESIS_MS: int = 2000
    MIN_DISTANCE_CHANGE_METERS: float = 3.0
    MOVING_THRESHOLD_MPS: float = 1.0
    HIGH_SPEED_THRESHOLD_MPS: float = 15.0

    # Driving metrics
    HARSH_BRAKING_THRESHOLD: float = -3.0
    HARSH_ACCELERATION_THRESHOLD: float = 3.0
    HARSH_BRAKING_PENALTY: int = 5
    HARSH_ACCELERATION_PENALTY: int = 3

    # Transport / offline queue
    OFFLINE_QUEUE_CAPACITY: int = 100
    OFFLINE_QUEUE_PATH: str | None = None
    BACKGROUND_SYNC_INTERVAL_SECONDS: float = 15.0
    DELAYED_SYNC_CYCLE_THRESHOLD: int = 3

    # Session extras
    GEOFENCE_RADIUS_METERS: float = 50.0
    LOCATION_TRAIL_SIZE: int = 50

    # Receiving API
    FRONTEND_URL: str = "http://localhost:5173"
    DOCS_ENABLED: bool = True

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @model_validator(mode="after")
    def validate_tracking_tunables(self) -> "Settings":
        """Reject cadence/threshold combinations the scheduler cannot honour."""
        for name in (
            "UPDATE_INTERVAL_MS",
            "STATIONARY_INTERVAL_MS",
            "HIGH_SPEED_INTERVAL_MS",
            "BACKGROUND_UPDATE_INTERVAL_MS",
            "OFFLINE_QUEUE_CAPACITY",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.MIN_DISTANCE_CHANGE_METERS < 0:
            raise ValueError("MIN_DISTANCE_CHANGE_METERS must not be negative")
        if self.HIGH_SPEED_THRESHOLD_MPS <= self.MOVING_THRESHOLD_MPS:
            raise ValueError("HIGH_SPEED_THRESHOLD_MPS must exceed MOVING_THRESHOLD_MPS")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        """Only echo SQL in development with DEBUG on."""
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

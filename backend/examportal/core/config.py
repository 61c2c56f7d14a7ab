import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):

    port: int = 8000
    environment: str = "development"


    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "examportal_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432

    # Full SQLAlchemy URL, overrides the POSTGRES_* parts when set
    database_url_override: Optional[str] = os.getenv("DATABASE_URL")

    @property
    def async_database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240


    cors_origins_str: str = "http://localhost:3000,http://localhost:5173,http://localhost:8080"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]


    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_enabled: bool = True
    cache_default_ttl: int = 600
    exam_cache_ttl: int = 300


    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    exam_status_refresh_interval: float = 60.0


    default_timezone: str = "UTC"
    timezone_display_format: str = "%d.%m.%Y, %H:%M:%S"


    upload_base_dir: str = os.getenv("UPLOAD_BASE_DIR", "/app")
    media_base_url: str = "http://localhost:8000"


    timer_tick_interval: float = 1.0
    low_time_threshold_seconds: int = 300
    face_sample_interval: float = 5.0
    default_warnings_threshold: int = 3
    default_passing_score: int = 40
    snapshot_upload_timeout: float = 5.0
    fullscreen_ack_timeout: float = 5.0
    camera_ready_timeout: float = 15.0


    face_detection_confidence: float = 0.6
    face_detection_model: int = 1
    # "client" streams frames from the browser, "local" reads a webcam attached to the server
    camera_source: str = "client"
    camera_index: int = 0
    camera_frame_width: int = 640
    camera_frame_height: int = 480


    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()

"""Application configuration using Pydantic Settings."""
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "Church Attendance"
    debug: bool = False

    # MongoDB (change streams need a replica set, even a single-node one)
    mongodb_url: str = "mongodb://localhost:27017/?replicaSet=rs0"
    mongodb_db_name: str = "church"

    # Live views
    subscription_retry_seconds: float = 5.0
    # Older collections that may still hold attendance ids (comma-separated)
    legacy_attendance_collections: str = "attendance"

    # CORS (comma-separated origins, e.g. "https://admin.example.org,http://localhost:5173")
    cors_origins: str = "http://localhost:5173"

    @model_validator(mode="after")
    def _validate_retry_interval(self):
        if self.subscription_retry_seconds <= 0:
            raise ValueError("SUBSCRIPTION_RETRY_SECONDS must be greater than zero")
        return self

    @property
    def legacy_collections(self) -> list[str]:
        return [c.strip() for c in self.legacy_attendance_collections.split(",") if c.strip()]


settings = Settings()

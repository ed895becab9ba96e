from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator
from typing import List, Union
from typing_extensions import Annotated
import json


def _parse_str_list(v: Union[str, List[str]]) -> List[str]:
    """Parse a list from a JSON array, a comma-separated string, or a single value."""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON array first: ["a", "b"]
        if v.startswith("["):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
        # Try comma-separated: a,b
        if "," in v:
            return [item.strip() for item in v.split(",") if item.strip()]
        if v.strip():
            return [v.strip()]
    return []


class Settings(BaseSettings):
    PROJECT_NAME: str = "CivicMap API"
    API_V1_STR: str = "/api"

    # Database - any SQLAlchemy URL, PostgreSQL in production via DATABASE_URL env var
    DATABASE_URL: str = "sqlite:///./civicmap.db"

    # CORS Configuration
    # BACKEND_CORS_ORIGINS=https://url1.com,https://url2.com or a JSON array
    # NoDecode prevents pydantic-settings from JSON-parsing before our validator runs
    BACKEND_CORS_ORIGINS: Annotated[List[str], NoDecode] = [
        "http://localhost:5173",
        "http://localhost:8000",
    ]

    # Municipal agents allowed to change report status (identity-provider uids)
    AGENT_UIDS: Annotated[List[str], NoDecode] = []

    @field_validator("BACKEND_CORS_ORIGINS", "AGENT_UIDS", mode="before")
    @classmethod
    def parse_str_list(cls, v: Union[str, List[str]]) -> List[str]:
        return _parse_str_list(v)

    @property
    def is_production(self) -> bool:
        return "localhost" not in self.DATABASE_URL and not self.DATABASE_URL.startswith("sqlite")

    # JWT identity tokens
    JWT_SECRET_KEY: str = "civicmap-jwt-secret-change-in-production-min-32-chars"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Gamification
    POINTS_PER_LEVEL: int = 100
    STARTING_POINTS: int = 0
    CERTIFICATION_THRESHOLD: int = 10   # validations before a furniture report is community-certified

    # Geolocation (client synchronization layer)
    GEOLOCATION_TIMEOUT_MS: int = 12000
    GEOLOCATION_HIGH_ACCURACY: bool = True

    # Subscription retry with exponential backoff
    SUBSCRIPTION_RETRY_BASE_SECONDS: float = 0.5
    SUBSCRIPTION_RETRY_MAX_SECONDS: float = 30.0
    SUBSCRIPTION_MAX_RETRIES: int = 5

    # Photo normalisation
    PHOTO_MAX_WIDTH: int = 1024
    PHOTO_MAX_HEIGHT: int = 1024
    PHOTO_JPEG_QUALITY: int = 65
    PHOTO_MAX_BYTES: int = 5 * 1024 * 1024

    # Reverse geocoding (Nominatim)
    GEOCODING_ENABLED: bool = False
    NOMINATIM_URL: str = "https://nominatim.openstreetmap.org"

    class Config:
        case_sensitive = True
        env_file = ".env"

settings = Settings()

"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Generator, List, Optional

from cryptography.fernet import Fernet
from fastapi import Request
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .security import TokenCipher
from .services.cache import TTLCache

SYNC_LEVEL_CHOICES = ("campaign", "adset", "ad")


class Settings(BaseSettings):
    """Application settings loaded from environment or .env.

    Built once at startup (see `create_app`) and passed explicitly to the
    services that need it. Nothing below the HTTP layer reads the environment.
    """

    DATABASE_URL: str
    # URL-safe base64 32-byte Fernet key
    TOKEN_ENCRYPTION_KEY: str

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None
    RELEASE_VERSION: Optional[str] = None

    # Meta
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_API_VERSION: str = "v19.0"
    META_CALLS_PER_HOUR: int = 200

    # Google Ads
    GOOGLE_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_LOGIN_CUSTOMER_ID: Optional[str] = None

    # Cache (in-memory when REDIS_URL is unset)
    REDIS_URL: Optional[str] = None
    CACHE_TTL_SECONDS: int = 300

    # Sync behaviour
    SYNC_DEFAULT_DAYS_BACK: int = 7
    SYNC_LEVELS: str = "campaign,adset,ad"
    TOKEN_EXPIRY_WARNING_DAYS: int = 7

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("TOKEN_ENCRYPTION_KEY")
    @classmethod
    def _validate_fernet_key(cls, value: str) -> str:
        try:
            Fernet(value)
        except (ValueError, TypeError) as exc:
            raise ValueError(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
                "Generate with: python generate_keys.py"
            ) from exc
        return value

    @field_validator("SYNC_LEVELS")
    @classmethod
    def _validate_sync_levels(cls, value: str) -> str:
        levels = [level.strip() for level in value.split(",") if level.strip()]
        unknown = [level for level in levels if level not in SYNC_LEVEL_CHOICES]
        if not levels or unknown:
            raise ValueError(f"SYNC_LEVELS must be a comma list of {SYNC_LEVEL_CHOICES}, got {value!r}")
        return ",".join(levels)

    @property
    def sync_levels(self) -> List[str]:
        return self.SYNC_LEVELS.split(",")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


def load_settings(**overrides) -> Settings:
    """Build and validate settings, failing fast with a readable error."""
    try:
        return Settings(**overrides)  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(
            f"Invalid configuration. Ensure backend/.env is created or env vars are exported.\n{exc}"
        ) from exc


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance (process entrypoints only)."""
    return load_settings()


# FastAPI dependencies -------------------------------------------------------
# Everything below reads objects built by create_app() from app.state.

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_cipher(request: Request) -> TokenCipher:
    return request.app.state.cipher


def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a database session from the app's session factory."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_meta_client_factory(request: Request):
    """Meta client factory sharing one rate limiter per access token."""
    return request.app.state.meta_client_factory


def get_google_client_factory(request: Request):
    return request.app.state.google_client_factory

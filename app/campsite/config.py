import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    session_lifetime_days: int
    csrf_enabled: bool

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    s3_public_url: str

    geocoder: str
    geocoder_url: str
    geocoder_user_agent: str
    geocoder_timeout: float


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///campsite.db"),
        session_lifetime_days=int(_getenv("SESSION_LIFETIME_DAYS", "7")),
        csrf_enabled=_getflag("CSRF_ENABLED", True),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        s3_public_url=_getenv("S3_PUBLIC_URL", ""),
        geocoder=_getenv("GEOCODER", "nominatim"),
        geocoder_url=_getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/search"),
        geocoder_user_agent=_getenv("GEOCODER_USER_AGENT", "Campsite/1.0 (admin@example.com)"),
        geocoder_timeout=float(_getenv("GEOCODER_TIMEOUT", "5")),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SESSION_LIFETIME_DAYS": s.session_lifetime_days,
        "CSRF_ENABLED": s.csrf_enabled,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "S3_PUBLIC_URL": s.s3_public_url,
        "GEOCODER": s.geocoder,
        "GEOCODER_URL": s.geocoder_url,
        "GEOCODER_USER_AGENT": s.geocoder_user_agent,
        "GEOCODER_TIMEOUT": s.geocoder_timeout,
        # cookie carries only the opaque session token
        "SESSION_COOKIE_NAME": "session",
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # image uploads (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }

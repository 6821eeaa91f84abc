"""
Environment-driven settings.

`.env` is loaded by the app factory (python-dotenv) before `load_settings()`
runs; scripts that work without the app call `load_settings()` directly.
"""
import os
from dataclasses import dataclass

PRODUCTION_ENVS = ("prod", "production")


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    database_url: str
    log_level: str

    # Proposal sources: local directory (relative to the working directory) or S3.
    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # Largest accepted upload, per request, in megabytes.
    max_upload_mb: int

    # Seeded admin; scripts/import_peps.py attributes bulk imports to this user.
    admin_email: str

    @property
    def is_production(self) -> bool:
        return self.env.lower() in PRODUCTION_ENVS


def load_settings() -> Settings:
    return Settings(
        env=_env("ENV", "development"),
        secret_key=_env("SECRET_KEY", "change-me"),
        database_url=_env("DATABASE_URL", "sqlite:///peptrack.db"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        storage_backend=_env("STORAGE_BACKEND", "local").lower(),
        storage_root=_env("STORAGE_ROOT", "storage"),
        s3_endpoint=_env("S3_ENDPOINT"),
        s3_region=_env("S3_REGION", "nyc3"),
        s3_bucket=_env("S3_BUCKET"),
        s3_access_key_id=_env("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
        max_upload_mb=_env_int("MAX_UPLOAD_MB", 5),
        admin_email=_env("ADMIN_EMAIL", "admin@example.com").lower(),
    )


def load_config() -> dict:
    """Flask config mapping built from `load_settings()`."""
    s = load_settings()
    return {
        "ENV": s.env,
        "SECRET_KEY": s.secret_key,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "MAX_UPLOAD_MB": s.max_upload_mb,
        "MAX_CONTENT_LENGTH": s.max_upload_mb * 1024 * 1024,
        "ADMIN_EMAIL": s.admin_email,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": s.is_production,
    }

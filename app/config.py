"""
Grant Reporting Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'grant_reports_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Grant Reporting Platform")

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Rate limiter storage (Redis in production, memory for dev)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Artifact encryption: 32-byte key-encrypting-key, never derived from content
    REPORT_ENCRYPTION_KEY = os.getenv("CRYPTO_KEK")
    # Degraded mode: store plaintext artifacts when no valid key is configured
    ALLOW_PLAINTEXT_ARTIFACTS = _env_flag("ALLOW_PLAINTEXT_ARTIFACTS", "true")

    # Artifact storage + signed access handles
    ARTIFACT_STORAGE_ROOT = os.getenv(
        "ARTIFACT_STORAGE_ROOT", os.path.join(basedir, "instance", "artifacts"),
    )
    ARTIFACT_URL_EXPIRES = int(os.getenv("ARTIFACT_URL_EXPIRES", "900"))  # 15 minutes
    ARTIFACT_URL_SECRET = os.getenv("ARTIFACT_URL_SECRET")  # falls back to SECRET_KEY

    # Background document generation
    REPORT_JOBS_ASYNC = True
    REPORT_JOB_WORKERS = int(os.getenv("REPORT_JOB_WORKERS", "2"))
    REPORT_JOB_STALE_MINUTES = int(os.getenv("REPORT_JOB_STALE_MINUTES", "30"))

    # Draft editor cadence advertised to clients
    AUTOSAVE_INTERVAL_SECONDS = int(os.getenv("AUTOSAVE_INTERVAL_SECONDS", "15"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite shares one connection; pool sizing does not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REPORT_ENCRYPTION_KEY = None
    ALLOW_PLAINTEXT_ARTIFACTS = True
    # Pipeline runs inline right after the job row is committed
    REPORT_JOBS_ASYNC = False
    ARTIFACT_URL_SECRET = "test-artifact-url-secret"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Fail closed: plaintext artifacts only when explicitly allowed
    ALLOW_PLAINTEXT_ARTIFACTS = _env_flag("ALLOW_PLAINTEXT_ARTIFACTS", "false")

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

"""
Study Import/Export Service
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets
import tempfile

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'studyport_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Filesystem roots. Staging must never live inside the assets root.
    ASSETS_ROOT = os.getenv("STUDY_ASSETS_ROOT", os.path.join(basedir, "study_assets"))
    STAGING_ROOT = os.getenv(
        "STAGING_ROOT", os.path.join(tempfile.gettempdir(), "studyport-staging")
    )
    EXPORT_ROOT = os.getenv(
        "EXPORT_ROOT", os.path.join(tempfile.gettempdir(), "studyport-export")
    )

    # Staging lifecycle
    STAGING_MAX_AGE_SECONDS = int(os.getenv("STAGING_MAX_AGE_SECONDS", "3600"))
    STAGING_SWEEP_INTERVAL_SECONDS = int(os.getenv("STAGING_SWEEP_INTERVAL_SECONDS", "300"))

    # Uploads
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_UPLOAD_BYTES", str(200 * 1024 * 1024)))

    # Identity used when API auth is disabled
    DEV_USER_EMAIL = os.getenv("DEV_USER_EMAIL", "admin@localhost")

    # Logging: "json" or "readable"; empty picks by environment
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # Auth disabled by default in development for convenience
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Auth disabled in test environment
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    # Tests swap in per-test directories; keep the defaults out of the source tree
    ASSETS_ROOT = os.path.join(tempfile.gettempdir(), "studyport-test-assets")
    # Tests drive the sweep by hand
    STAGING_SWEEP_INTERVAL_SECONDS = 0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if not os.getenv("STUDY_ASSETS_ROOT"):
            raise RuntimeError("STUDY_ASSETS_ROOT environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}

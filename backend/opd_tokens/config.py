"""
Application configuration loaded from environment variables.

Supports switching between a local SQLite file and PostgreSQL
(local or cloud) via DATABASE_MODE.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from backend directory
backend_dir = Path(__file__).parent.parent
load_dotenv(backend_dir / ".env")


class Config:
    """Application configuration."""

    # Flask settings
    DEBUG = os.getenv("FLASK_DEBUG", "0") == "1"
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    FLASK_ENV = os.getenv("FLASK_ENV", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database mode: "sqlite", "local" or "cloud"
    DATABASE_MODE = os.getenv("DATABASE_MODE", "sqlite")
    SQLITE_PATH = os.getenv("SQLITE_PATH", str(backend_dir / "opd_tokens.db"))

    # PostgreSQL - Local
    POSTGRES_HOST_LOCAL = os.getenv("POSTGRES_HOST_LOCAL", "localhost")
    POSTGRES_PORT_LOCAL = os.getenv("POSTGRES_PORT_LOCAL", "5432")
    POSTGRES_DB_LOCAL = os.getenv("POSTGRES_DB_LOCAL", "opd_tokens")
    POSTGRES_USER_LOCAL = os.getenv("POSTGRES_USER_LOCAL", "postgres")
    POSTGRES_PASSWORD_LOCAL = os.getenv("POSTGRES_PASSWORD_LOCAL", "")

    # PostgreSQL - Cloud
    POSTGRES_HOST_CLOUD = os.getenv("POSTGRES_HOST_CLOUD", "")
    POSTGRES_PORT_CLOUD = os.getenv("POSTGRES_PORT_CLOUD", "5432")
    POSTGRES_DB_CLOUD = os.getenv("POSTGRES_DB_CLOUD", "opd_tokens")
    POSTGRES_USER_CLOUD = os.getenv("POSTGRES_USER_CLOUD", "postgres")
    POSTGRES_PASSWORD_CLOUD = os.getenv("POSTGRES_PASSWORD_CLOUD", "")

    # Allocation engine
    ALLOCATION_DEADLINE_SECONDS = float(os.getenv("ALLOCATION_DEADLINE_SECONDS", "30"))
    CONFIG_CACHE_TTL_SECONDS = float(os.getenv("CONFIG_CACHE_TTL_SECONDS", "300"))
    IN_FLIGHT_SWEEP_INTERVAL_SECONDS = float(os.getenv("IN_FLIGHT_SWEEP_INTERVAL_SECONDS", "300"))

    @classmethod
    def get_database_url(cls) -> str:
        """Build the database URL based on DATABASE_MODE."""
        if cls.DATABASE_MODE == "sqlite":
            return f"sqlite:///{cls.SQLITE_PATH}"

        if cls.DATABASE_MODE == "cloud":
            host = cls.POSTGRES_HOST_CLOUD
            port = cls.POSTGRES_PORT_CLOUD
            db = cls.POSTGRES_DB_CLOUD
            user = cls.POSTGRES_USER_CLOUD
            password = cls.POSTGRES_PASSWORD_CLOUD
        else:
            host = cls.POSTGRES_HOST_LOCAL
            port = cls.POSTGRES_PORT_LOCAL
            db = cls.POSTGRES_DB_LOCAL
            user = cls.POSTGRES_USER_LOCAL
            password = cls.POSTGRES_PASSWORD_LOCAL

        if password:
            return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db}"
        return f"postgresql+psycopg://{user}@{host}:{port}/{db}"


# Singleton instance
config = Config()

# config.py
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""
    STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "school_portal")

    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-key-change-me")
    JWT_ALGORITHM = "HS256"

    # Name of the persisted client-side identity
    SESSION_KEY = os.getenv("SESSION_KEY", "crescentUser")
    SESSION_FILE = os.getenv("SESSION_FILE", os.path.join(os.path.expanduser("~"), ".school_portal_session.json"))

    DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
    DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")
    DEFAULT_ADMIN_NAME = os.getenv("DEFAULT_ADMIN_NAME", "Principal Administrator")

    MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Development config."""
    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    """Production config."""
    DEBUG = False
    STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")


class TestingConfig(Config):
    """Testing config with the in-memory store."""
    TESTING = True
    DEBUG = True
    STORE_BACKEND = "memory"
    JWT_SECRET = "testing-secret"


def get_config():
    env = os.getenv("APP_ENV", "development")
    if env == "production":
        return ProductionConfig
    elif env == "testing":
        return TestingConfig
    return DevelopmentConfig

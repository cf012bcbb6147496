# config.py
import os
import secrets
from urllib.parse import urlparse

from dotenv import load_dotenv

from errors import ConfigError

load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}
STORAGE_BACKENDS = {"local", "null"}


def env_name() -> str:
    return (os.environ.get("APP_ENV") or "development").strip().lower()


def is_production() -> bool:
    return env_name() == "production"


def validate_database_uri(uri: str, production: bool) -> str:
    uri = (uri or "").strip()
    if not uri:
        raise ConfigError("DATABASE_URL is not set")
    if not production:
        return uri

    parsed = urlparse(uri)
    scheme = (parsed.scheme or "").split("+")[0].lower()
    if scheme == "sqlite":
        raise ConfigError("DATABASE_URL must point to a managed database in production (sqlite rejected)")
    host = (parsed.hostname or "").lower()
    if not host or host in LOCAL_HOSTS:
        raise ConfigError(f"DATABASE_URL must point to a managed database in production (host {host or '?'} rejected)")
    return uri


def load_config() -> dict:
    production = is_production()

    secret = os.environ.get("SECRET_KEY")
    if production:
        if not secret:
            raise ConfigError("SECRET_KEY is required in production")
        if len(secret) < 32:
            raise ConfigError("SECRET_KEY must be at least 32 characters long")
    secret = secret or secrets.token_hex(32)

    default_db = "sqlite:///" + os.path.join(BASE_DIR, "canteen.db")
    db_uri = validate_database_uri(os.environ.get("DATABASE_URL") or ("" if production else default_db), production)

    storage = (os.environ.get("STORAGE_BACKEND") or "local").strip().lower()
    if storage not in STORAGE_BACKENDS:
        raise ConfigError(f"STORAGE_BACKEND must be one of {sorted(STORAGE_BACKENDS)}")

    return {
        "APP_ENV": env_name(),
        "SECRET_KEY": secret,
        "SQLALCHEMY_DATABASE_URI": db_uri,
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "TESTING": env_name() == "testing",
        "STORAGE_BACKEND": storage,
        "UPLOAD_DIR": os.environ.get("UPLOAD_DIR") or os.path.join(BASE_DIR, "static", "uploads"),
        "PUBLIC_BASE_URL": (os.environ.get("PUBLIC_BASE_URL") or "").rstrip("/"),
        "CUSTOMER_APP_URL": (os.environ.get("CUSTOMER_APP_URL") or "http://localhost:3000").rstrip("/"),
        "TOKEN_MAX_AGE": int(os.environ.get("TOKEN_MAX_AGE") or 12 * 3600),
        "PAYMENT_PENDING_TIMEOUT_MINUTES": int(os.environ.get("PAYMENT_PENDING_TIMEOUT_MINUTES") or 30),
        "OTP_TTL_SECONDS": int(os.environ.get("OTP_TTL_SECONDS") or 300),
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }

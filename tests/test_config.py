import pytest

import config
from errors import ConfigError


@pytest.mark.parametrize("uri", [
    "sqlite:///canteen.db",
    "postgresql://app:pw@localhost:5432/canteen",
    "mysql+pymysql://app:pw@127.0.0.1/canteen",
    "",
])
def test_production_rejects_local_databases(uri):
    with pytest.raises(ConfigError):
        config.validate_database_uri(uri, production=True)


def test_production_accepts_managed_database():
    uri = "postgresql://app:pw@db.internal.example.com:5432/canteen"
    assert config.validate_database_uri(uri, production=True) == uri


def test_development_allows_sqlite():
    assert config.validate_database_uri("sqlite://", production=False) == "sqlite://"


def test_production_requires_a_long_secret(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.internal.example.com/canteen")
    monkeypatch.delenv("SECRET_KEY", raising=False)
    with pytest.raises(ConfigError):
        config.load_config()

    monkeypatch.setenv("SECRET_KEY", "short")
    with pytest.raises(ConfigError):
        config.load_config()

    monkeypatch.setenv("SECRET_KEY", "x" * 40)
    cfg = config.load_config()
    assert cfg["APP_ENV"] == "production"
    assert cfg["TESTING"] is False


def test_unknown_storage_backend_rejected(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("STORAGE_BACKEND", "ftp")
    with pytest.raises(ConfigError):
        config.load_config()

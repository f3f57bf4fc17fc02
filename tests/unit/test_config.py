"""Unit tests for configuration module."""

import pytest

from async_timetable.config import LIVENESS_ACTIVITY, LIVENESS_LEASE, TimetableConfig
from async_timetable.session import LeaseLivenessOracle, PgStatActivityOracle


def test_config_from_env_minimal(monkeypatch):
    """Test creating config from minimal environment variables."""
    monkeypatch.setenv("TIMETABLE_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("TIMETABLE_CLIENT_NAME", "worker01")
    for name in (
        "TIMETABLE_APPLICATION_NAME",
        "TIMETABLE_LIVENESS",
        "TIMETABLE_LEASE_TTL_SECONDS",
        "TIMETABLE_TICK_SECONDS",
        "TIMETABLE_RECONNECT_SECONDS",
        "TIMETABLE_CONTROL_AUTH_TOKEN",
        "TIMETABLE_BUILTINS_MODULE",
    ):
        monkeypatch.delenv(name, raising=False)

    config = TimetableConfig.from_env()

    assert config.db_dsn == "postgresql://localhost/test"
    assert config.client_name == "worker01"
    assert config.application_name == "async_timetable"  # default
    assert config.liveness == LIVENESS_ACTIVITY  # default
    assert config.lease_ttl_seconds == 180  # default
    assert config.tick_seconds == 60  # default
    assert config.reconnect_seconds == 30  # default
    assert config.control_auth_token is None
    assert config.builtins_module is None


def test_config_from_env_with_overrides(monkeypatch):
    """Test creating config with all environment variables."""
    monkeypatch.setenv("TIMETABLE_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("TIMETABLE_CLIENT_NAME", "worker01")
    monkeypatch.setenv("TIMETABLE_APPLICATION_NAME", "reports")
    monkeypatch.setenv("TIMETABLE_LIVENESS", "lease")
    monkeypatch.setenv("TIMETABLE_LEASE_TTL_SECONDS", "15")
    monkeypatch.setenv("TIMETABLE_TICK_SECONDS", "5")
    monkeypatch.setenv("TIMETABLE_RECONNECT_SECONDS", "3")
    monkeypatch.setenv("TIMETABLE_CONTROL_AUTH_TOKEN", "secret123")
    monkeypatch.setenv("TIMETABLE_BUILTINS_MODULE", "myapp.builtins")

    config = TimetableConfig.from_env()

    assert config.application_name == "reports"
    assert config.liveness == LIVENESS_LEASE
    assert config.lease_ttl_seconds == 15
    assert config.tick_seconds == 5
    assert config.reconnect_seconds == 3
    assert config.control_auth_token == "secret123"
    assert config.builtins_module == "myapp.builtins"


@pytest.mark.parametrize("missing", ["TIMETABLE_DB_DSN", "TIMETABLE_CLIENT_NAME"])
def test_config_missing_required(monkeypatch, missing):
    """Test that missing required variables raise ValueError."""
    monkeypatch.setenv("TIMETABLE_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("TIMETABLE_CLIENT_NAME", "worker01")
    monkeypatch.delenv(missing)

    with pytest.raises(ValueError, match=missing):
        TimetableConfig.from_env()


def test_config_invalid_integer(monkeypatch):
    monkeypatch.setenv("TIMETABLE_DB_DSN", "postgresql://localhost/test")
    monkeypatch.setenv("TIMETABLE_CLIENT_NAME", "worker01")
    monkeypatch.setenv("TIMETABLE_TICK_SECONDS", "soon")

    with pytest.raises(ValueError, match="TIMETABLE_TICK_SECONDS"):
        TimetableConfig.from_env()


def test_config_unknown_liveness():
    with pytest.raises(ValueError):
        TimetableConfig(db_dsn="postgresql://localhost/test", client_name="w", liveness="psychic")


def test_server_settings():
    config = TimetableConfig(
        db_dsn="postgresql://localhost/test", client_name="w", application_name="reports"
    )
    assert config.server_settings() == {"application_name": "reports"}


def test_create_liveness_oracle():
    """Test that the configured liveness mode selects the oracle."""
    activity = TimetableConfig(db_dsn="dsn", client_name="w", application_name="reports")
    oracle = activity.create_liveness_oracle()
    assert isinstance(oracle, PgStatActivityOracle)
    assert oracle.application_name == "reports"

    lease = TimetableConfig(
        db_dsn="dsn", client_name="w", liveness=LIVENESS_LEASE, lease_ttl_seconds=20, tick_seconds=5
    )
    oracle = lease.create_liveness_oracle()
    assert isinstance(oracle, LeaseLivenessOracle)
    assert oracle.ttl.total_seconds() == 20


@pytest.mark.parametrize("ttl", [30, 60])
def test_lease_ttl_must_exceed_tick(ttl):
    """Test that lease mode rejects a TTL the per-tick heartbeat cannot keep alive."""
    with pytest.raises(ValueError, match="lease_ttl_seconds"):
        TimetableConfig(
            db_dsn="dsn",
            client_name="w",
            liveness=LIVENESS_LEASE,
            lease_ttl_seconds=ttl,
            tick_seconds=60,
        )

    # activity mode does not heartbeat, so the TTL is irrelevant
    TimetableConfig(db_dsn="dsn", client_name="w", lease_ttl_seconds=ttl, tick_seconds=60)


def test_default_lease_ttl_exceeds_default_tick():
    config = TimetableConfig(db_dsn="dsn", client_name="w", liveness=LIVENESS_LEASE)
    assert config.lease_ttl_seconds > config.tick_seconds

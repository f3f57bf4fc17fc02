"""Configuration for timetable workers."""

import os
from typing import Optional

LIVENESS_ACTIVITY = "activity"
LIVENESS_LEASE = "lease"


def _int_env(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {value!r}") from e


class TimetableConfig:
    """Configuration object for a timetable worker."""

    def __init__(
        self,
        db_dsn: str,
        client_name: str,
        application_name: str = "async_timetable",
        liveness: str = LIVENESS_ACTIVITY,
        lease_ttl_seconds: int = 180,
        tick_seconds: int = 60,
        reconnect_seconds: int = 30,
        control_auth_token: Optional[str] = None,
        builtins_module: Optional[str] = None,
    ):
        if liveness not in (LIVENESS_ACTIVITY, LIVENESS_LEASE):
            raise ValueError(
                f"Unknown liveness mode {liveness!r}, "
                f"expected '{LIVENESS_ACTIVITY}' or '{LIVENESS_LEASE}'"
            )
        if liveness == LIVENESS_LEASE and lease_ttl_seconds <= tick_seconds:
            # the session heartbeats once per tick
            raise ValueError(
                f"lease_ttl_seconds ({lease_ttl_seconds}) must be greater than "
                f"tick_seconds ({tick_seconds}) in lease mode"
            )
        self.db_dsn = db_dsn
        self.client_name = client_name
        self.application_name = application_name
        self.liveness = liveness
        self.lease_ttl_seconds = lease_ttl_seconds
        self.tick_seconds = tick_seconds
        self.reconnect_seconds = reconnect_seconds
        self.control_auth_token = control_auth_token
        self.builtins_module = builtins_module

    @classmethod
    def from_env(cls) -> "TimetableConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("TIMETABLE_DB_DSN")
        if not db_dsn:
            raise ValueError("TIMETABLE_DB_DSN environment variable is required")

        client_name = os.getenv("TIMETABLE_CLIENT_NAME")
        if not client_name:
            raise ValueError("TIMETABLE_CLIENT_NAME environment variable is required")

        return cls(
            db_dsn=db_dsn,
            client_name=client_name,
            application_name=os.getenv("TIMETABLE_APPLICATION_NAME", "async_timetable"),
            liveness=os.getenv("TIMETABLE_LIVENESS", LIVENESS_ACTIVITY),
            lease_ttl_seconds=_int_env("TIMETABLE_LEASE_TTL_SECONDS", "180"),
            tick_seconds=_int_env("TIMETABLE_TICK_SECONDS", "60"),
            reconnect_seconds=_int_env("TIMETABLE_RECONNECT_SECONDS", "30"),
            control_auth_token=os.getenv("TIMETABLE_CONTROL_AUTH_TOKEN"),
            builtins_module=os.getenv("TIMETABLE_BUILTINS_MODULE"),
        )

    def server_settings(self) -> dict:
        """Connection settings that make sessions visible to the liveness oracle."""
        return {"application_name": self.application_name}

    def create_liveness_oracle(self):
        """Build the liveness oracle selected by this config."""
        from async_timetable.session import LeaseLivenessOracle, PgStatActivityOracle

        if self.liveness == LIVENESS_LEASE:
            return LeaseLivenessOracle(ttl_seconds=self.lease_ttl_seconds)
        return PgStatActivityOracle(application_name=self.application_name)

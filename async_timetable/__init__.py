"""PostgreSQL-backed job scheduling engine for asyncio workers."""

from async_timetable.config import TimetableConfig
from async_timetable.cron import is_cron_in_time, next_run, occurrences_from
from async_timetable.ddl import TIMETABLE_SCHEMA_DDL, apply_schema
from async_timetable.errors import (
    AuthTokenError,
    ChainNotFoundError,
    CronFormatError,
    CronRangeError,
    LockDeniedError,
    ParameterValidationError,
    RemoteHttpError,
    SchemaError,
    TaskNotFoundError,
    TimetableError,
)
from async_timetable.http_client import TimetableHttpClient
from async_timetable.models import (
    ActiveChain,
    ActiveSession,
    Chain,
    ChainCommand,
    ChainTask,
    CommandKind,
    LogLevel,
    Parameter,
    Task,
)
from async_timetable.notifications import ChainNotification, NotificationPublisher
from async_timetable.registry import BuiltinRegistry, builtin_registry
from async_timetable.scheduler import ChainScheduler, run_scheduler_loop
from async_timetable.scheduler_main import run_worker
from async_timetable.schema import validate_json_schema
from async_timetable.service import TimetableService
from async_timetable.session import (
    LeaseLivenessOracle,
    LivenessOracle,
    PgStatActivityOracle,
    SessionCoordinator,
)
from async_timetable.store import TimetableStore

__version__ = "0.1.0"

__all__ = [
    "TimetableConfig",
    "is_cron_in_time",
    "next_run",
    "occurrences_from",
    "TIMETABLE_SCHEMA_DDL",
    "apply_schema",
    "AuthTokenError",
    "ChainNotFoundError",
    "CronFormatError",
    "CronRangeError",
    "LockDeniedError",
    "ParameterValidationError",
    "RemoteHttpError",
    "SchemaError",
    "TaskNotFoundError",
    "TimetableError",
    "TimetableHttpClient",
    "ActiveChain",
    "ActiveSession",
    "Chain",
    "ChainCommand",
    "ChainTask",
    "CommandKind",
    "LogLevel",
    "Parameter",
    "Task",
    "ChainNotification",
    "NotificationPublisher",
    "BuiltinRegistry",
    "builtin_registry",
    "ChainScheduler",
    "run_scheduler_loop",
    "run_worker",
    "validate_json_schema",
    "TimetableService",
    "LeaseLivenessOracle",
    "LivenessOracle",
    "PgStatActivityOracle",
    "SessionCoordinator",
    "TimetableStore",
]

"""Data models for chains, tasks and coordination state."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class CommandKind(str, Enum):
    """Kinds of task commands."""

    SQL = "SQL"
    PROGRAM = "PROGRAM"
    BUILTIN = "BUILTIN"


class LogLevel(str, Enum):
    """Severity values of the log table."""

    DEBUG = "DEBUG"
    NOTICE = "NOTICE"
    INFO = "INFO"
    ERROR = "ERROR"
    PANIC = "PANIC"
    USER = "USER"


class ChainCommand(str, Enum):
    """Commands a control plane can push to a worker."""

    START = "START"
    STOP = "STOP"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Chain:
    """A named, independently schedulable sequence of tasks."""

    def __init__(
        self,
        chain_id: int,
        chain_name: str,
        run_at: Optional[str] = None,
        max_instances: Optional[int] = None,
        timeout: int = 0,
        live: bool = False,
        self_destruct: bool = False,
        exclusive_execution: bool = False,
        client_name: Optional[str] = None,
    ):
        self.chain_id = chain_id
        self.chain_name = chain_name
        self.run_at = run_at
        self.max_instances = max_instances
        self.timeout = timeout or 0
        self.live = bool(live)
        self.self_destruct = bool(self_destruct)
        self.exclusive_execution = bool(exclusive_execution)
        self.client_name = client_name

    def is_assigned_to(self, client_name: str) -> bool:
        """Whether the given worker may run this chain."""
        return self.client_name is None or self.client_name == client_name

    def to_dict(self) -> Dict[str, Any]:
        """Convert chain to dictionary for JSON serialization."""
        return {
            "chain_id": self.chain_id,
            "chain_name": self.chain_name,
            "run_at": self.run_at,
            "max_instances": self.max_instances,
            "timeout": self.timeout,
            "live": self.live,
            "self_destruct": self.self_destruct,
            "exclusive_execution": self.exclusive_execution,
            "client_name": self.client_name,
        }


class Task:
    """One ordered step of a chain."""

    def __init__(
        self,
        task_id: int,
        chain_id: Optional[int],
        task_order: float,
        command: str,
        kind: CommandKind = CommandKind.SQL,
        task_name: Optional[str] = None,
        run_as: Optional[str] = None,
        database_connection: Optional[str] = None,
        ignore_error: bool = False,
        autonomous: bool = False,
        timeout: int = 0,
    ):
        self.task_id = task_id
        self.chain_id = chain_id
        self.task_order = float(task_order)
        self.command = command
        self.kind = CommandKind(kind) if isinstance(kind, str) else kind
        self.task_name = task_name
        self.run_as = run_as
        self.database_connection = database_connection
        self.ignore_error = bool(ignore_error)
        self.autonomous = bool(autonomous)
        self.timeout = timeout or 0

    @property
    def disabled(self) -> bool:
        """Tasks detached from a chain never run."""
        return self.chain_id is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert task to dictionary for JSON serialization."""
        return {
            "task_id": self.task_id,
            "chain_id": self.chain_id,
            "task_order": self.task_order,
            "task_name": self.task_name,
            "kind": self.kind.value,
            "command": self.command,
            "run_as": self.run_as,
            "database_connection": self.database_connection,
            "ignore_error": self.ignore_error,
            "autonomous": self.autonomous,
            "timeout": self.timeout,
        }


class Parameter:
    """Positional argument bound to a task invocation."""

    def __init__(self, task_id: int, order_id: int, value: Any = None):
        if order_id < 1:
            raise ValueError(f"Parameter order_id must be positive, got {order_id}")
        self.task_id = task_id
        self.order_id = order_id
        self.value = value

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "order_id": self.order_id, "value": self.value}


class ActiveSession:
    """Claim that a worker process owns a client name."""

    def __init__(
        self,
        client_pid: int,
        client_name: str,
        server_pid: int,
        started_at: Optional[datetime] = None,
        heartbeat_at: Optional[datetime] = None,
    ):
        self.client_pid = client_pid
        self.client_name = client_name
        self.server_pid = server_pid
        self.started_at = started_at
        self.heartbeat_at = heartbeat_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_pid": self.client_pid,
            "client_name": self.client_name,
            "server_pid": self.server_pid,
            "started_at": _isoformat(self.started_at),
            "heartbeat_at": _isoformat(self.heartbeat_at),
        }


class ActiveChain:
    """Marker that a chain is currently executing under some client."""

    def __init__(
        self, chain_id: int, client_name: str, started_at: Optional[datetime] = None
    ):
        self.chain_id = chain_id
        self.client_name = client_name
        self.started_at = started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "client_name": self.client_name,
            "started_at": _isoformat(self.started_at),
        }


class ChainTask(NamedTuple):
    """A task together with its resolved parameter values, in order."""

    task: Task
    parameters: List[Any]

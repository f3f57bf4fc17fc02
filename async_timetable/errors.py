"""Exception types for the timetable engine."""


class TimetableError(Exception):
    """Base exception for all timetable errors."""

    pass


class CronFormatError(TimetableError, ValueError):
    """Raised when a cron expression or interval cannot be parsed."""

    def __init__(self, cron: str, message: str = None):
        self.cron = cron
        if message is None:
            message = f"Value ({cron!r}) not recognized"
        super().__init__(message)


class CronRangeError(TimetableError, ValueError):
    """Raised when a cron field resolves to values outside its domain."""

    def __init__(self, field: str, values, allowed: tuple, message: str = None):
        self.field = field
        self.values = values
        self.allowed = allowed
        if message is None:
            message = f"{field} {list(values)} is out of range: {list(allowed)}"
        super().__init__(message)


class SchemaError(TimetableError):
    """Raised when a JSON schema has a shape the validator cannot interpret."""

    pass


class ParameterValidationError(TimetableError):
    """Raised when task parameters are rejected by their schema."""

    def __init__(self, task_id: int, order_id: int, message: str = None):
        self.task_id = task_id
        self.order_id = order_id
        if message is None:
            message = f"Parameter {order_id} of task {task_id} does not match its schema"
        super().__init__(message)


class LockDeniedError(TimetableError):
    """Raised when a client name cannot be locked for this worker."""

    def __init__(self, client_name: str, message: str = None):
        self.client_name = client_name
        if message is None:
            message = f"Another client is already connected with name: {client_name}"
        super().__init__(message)


class ChainNotFoundError(TimetableError):
    """Raised when a chain is not found."""

    def __init__(self, chain: str, message: str = None):
        self.chain = chain
        if message is None:
            message = f"Chain {chain} not found"
        super().__init__(message)


class TaskNotFoundError(TimetableError):
    """Raised when a task is not found."""

    def __init__(self, task_id: int, message: str = None):
        self.task_id = task_id
        if message is None:
            message = f"Task {task_id} not found"
        super().__init__(message)


class AuthTokenError(TimetableError):
    """Raised when the control plane token is missing or invalid."""

    pass


class RemoteHttpError(TimetableError):
    """Raised when an HTTP request to a remote control plane fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")

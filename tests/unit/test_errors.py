"""Unit tests for errors module."""

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


def test_timetable_error_base_class():
    """Test base exception class."""
    error = TimetableError("Test error")
    assert str(error) == "Test error"
    assert isinstance(error, Exception)


def test_cron_errors_are_value_errors():
    format_error = CronFormatError("x * * * *")
    assert isinstance(format_error, TimetableError)
    assert isinstance(format_error, ValueError)
    assert format_error.cron == "x * * * *"
    assert "x * * * *" in str(format_error)

    range_error = CronRangeError("minute", (61,), (0, 59))
    assert isinstance(range_error, ValueError)
    assert range_error.field == "minute"
    assert str(range_error) == "minute [61] is out of range: [0, 59]"


def test_lock_denied_error():
    """Test LockDeniedError."""
    error = LockDeniedError("worker01")
    assert isinstance(error, TimetableError)
    assert error.client_name == "worker01"
    assert "worker01" in str(error)


def test_not_found_errors():
    chain_error = ChainNotFoundError("nightly")
    assert chain_error.chain == "nightly"
    assert str(chain_error) == "Chain nightly not found"

    task_error = TaskNotFoundError(42)
    assert task_error.task_id == 42
    assert str(task_error) == "Task 42 not found"


def test_parameter_validation_error():
    error = ParameterValidationError(7, 2)
    assert error.task_id == 7
    assert error.order_id == 2
    assert "task 7" in str(error)


def test_schema_and_auth_errors():
    assert isinstance(SchemaError("bad"), TimetableError)
    assert str(AuthTokenError("Invalid token")) == "Invalid token"


def test_remote_http_error():
    """Test RemoteHttpError."""
    error = RemoteHttpError(404, "Not found", response_body='{"detail": "Not found"}')
    assert isinstance(error, TimetableError)
    assert error.status_code == 404
    assert error.response_body == '{"detail": "Not found"}'
    assert str(error) == "HTTP 404: Not found"

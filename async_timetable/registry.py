"""Built-in task registry and the default chain executor."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Optional

from async_timetable.errors import ParameterValidationError
from async_timetable.models import Chain, ChainTask, CommandKind
from async_timetable.schema import validate_json_schema

ChainExecutor = Callable[[Chain, list[ChainTask]], Awaitable[bool]]


class BuiltinRegistry:
    """Registry for built-in task routines and their parameter schemas."""

    def __init__(self):
        self._builtins: dict[str, Callable] = {}
        self._schemas: dict[str, dict] = {}

    def builtin(self, name: str, schema: Optional[dict] = None):
        """
        Decorator to register a built-in routine.

        The routine is called once per parameter row of the task, or once
        with ``None`` when the task has no parameters.

        Usage:
            @registry.builtin("Sleep", schema={"type": "integer", "minimum": 0})
            async def sleep(ctx, seconds):
                ...
        """

        def decorator(func: Callable):
            self._builtins[name] = func
            if schema is not None:
                self._schemas[name] = schema
            return func

        return decorator

    def get_builtin(self, name: str) -> Optional[Callable]:
        """Get a built-in by name."""
        return self._builtins.get(name)

    def get_schema(self, name: str) -> Optional[dict]:
        """Get the parameter schema of a built-in, if it declares one."""
        return self._schemas.get(name)

    def all_builtins(self) -> dict[str, Callable]:
        """Get all registered built-ins."""
        return self._builtins.copy()

    def validate_parameters(self, chain_task: ChainTask) -> None:
        """
        Check a built-in task's parameters against its declared schema.

        Raises:
            ParameterValidationError: On the first parameter that fails
        """
        task = chain_task.task
        if task.kind != CommandKind.BUILTIN:
            return
        schema = self.get_schema(task.command)
        if schema is None:
            return
        for order_id, value in enumerate(chain_task.parameters, start=1):
            if not validate_json_schema(schema, value):
                raise ParameterValidationError(task.task_id, order_id)

    def create_executor(
        self,
        client_name: str,
        store=None,
        logger: Optional[logging.Logger] = None,
    ) -> ChainExecutor:
        """
        Build an executor that runs BUILTIN tasks through this registry.

        SQL and PROGRAM tasks fail: running them belongs to a dedicated
        executor. When a store is given every task run is written to the
        execution log.
        """
        logger = logger or logging.getLogger(__name__)

        async def run_task(chain: Chain, chain_task: ChainTask) -> None:
            task = chain_task.task
            if task.kind != CommandKind.BUILTIN:
                raise NotImplementedError(f"No executor for {task.kind.value} tasks")
            handler = self.get_builtin(task.command)
            if handler is None:
                raise LookupError(f"Unknown built-in {task.command!r}")

            ctx = {"chain": chain, "task": task, "logger": logger}
            for value in chain_task.parameters or [None]:
                call = handler(ctx, value)
                if task.timeout:
                    await asyncio.wait_for(call, timeout=task.timeout / 1000)
                else:
                    await call

        async def execute(chain: Chain, tasks: list[ChainTask]) -> bool:
            for chain_task in tasks:
                task = chain_task.task
                started_at = datetime.now(timezone.utc)
                returncode, output = 0, None
                try:
                    await run_task(chain, chain_task)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    returncode, output = -1, str(e)
                    logger.error(
                        f"Task {task.task_id} of chain {chain.chain_name} failed: {e}"
                    )

                if store is not None:
                    await store.insert_execution_log(
                        chain_id=chain.chain_id,
                        task=task,
                        client_name=client_name,
                        started_at=started_at,
                        finished_at=datetime.now(timezone.utc),
                        returncode=returncode,
                        output=output,
                    )

                if returncode != 0 and not task.ignore_error:
                    return False
            return True

        return execute


# Global registry instance
builtin_registry = BuiltinRegistry()


@builtin_registry.builtin("NoOp")
async def noop(ctx, value):
    """Do nothing; useful as a chain placeholder."""
    ctx["logger"].debug(f"NoOp task {ctx['task'].task_id}")


@builtin_registry.builtin("Sleep", schema={"type": "integer", "minimum": 0})
async def sleep(ctx, seconds):
    """Sleep for the given number of seconds."""
    await asyncio.sleep(seconds or 0)


@builtin_registry.builtin("Log")
async def log(ctx, value: Any):
    """Write the parameter value to the worker log."""
    ctx["logger"].info(f"Log task {ctx['task'].task_id}: {value}")

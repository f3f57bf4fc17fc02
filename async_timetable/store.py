"""Database store layer for chains, tasks and parameters."""

import json
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from async_timetable.errors import ChainNotFoundError, TaskNotFoundError
from async_timetable.models import Chain, CommandKind, LogLevel, Parameter, Task

DEFAULT_TASK_ORDER = 10.0

_CHAIN_COLUMNS = (
    "chain_id, chain_name, run_at, max_instances, timeout, live, "
    "self_destruct, exclusive_execution, client_name"
)
_TASK_COLUMNS = (
    "task_id, chain_id, task_order, task_name, kind::text AS kind, command, "
    "run_as, database_connection, ignore_error, autonomous, timeout"
)


class TimetableStore:
    """Database layer for chain and task operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def add_job(
        self,
        name: str,
        schedule: Optional[str],
        command: str,
        parameters: Any = None,
        kind: CommandKind = CommandKind.SQL,
        client_name: Optional[str] = None,
        max_instances: Optional[int] = None,
        live: bool = True,
        self_destruct: bool = False,
        ignore_errors: bool = True,
        exclusive: bool = False,
    ) -> int:
        """
        Add a one-task chain (aka job).

        The chain, its task and the task's first parameter are inserted in a
        single transaction.

        Returns:
            The new chain ID
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                chain_id = await conn.fetchval(
                    """
                    INSERT INTO timetable.chain (
                        chain_name, run_at, max_instances, live,
                        self_destruct, client_name, exclusive_execution
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING chain_id
                    """,
                    name,
                    schedule,
                    max_instances,
                    live,
                    self_destruct,
                    client_name,
                    exclusive,
                )
                task_id = await conn.fetchval(
                    """
                    INSERT INTO timetable.task (
                        chain_id, task_order, kind, command, ignore_error, autonomous
                    ) VALUES ($1, $2, $3::timetable.command_kind, $4, $5, TRUE)
                    RETURNING task_id
                    """,
                    chain_id,
                    DEFAULT_TASK_ORDER,
                    CommandKind(kind).value,
                    command,
                    ignore_errors,
                )
                await conn.execute(
                    """
                    INSERT INTO timetable.parameter (task_id, order_id, value)
                    VALUES ($1, 1, $2::jsonb)
                    """,
                    task_id,
                    json.dumps(parameters) if parameters is not None else None,
                )
        return chain_id

    async def add_task(
        self,
        kind: CommandKind,
        command: str,
        parent_id: int,
        order_delta: float = DEFAULT_TASK_ORDER,
    ) -> int:
        """
        Add a task to the same chain as the task with ``parent_id``.

        The new task is ordered at the parent's order plus ``order_delta``.
        Choosing a delta smaller than the gap to the parent's successor is the
        caller's responsibility; otherwise the task lands past it.

        Raises:
            TaskNotFoundError: If the parent task does not exist
        """
        async with self.db_pool.acquire() as conn:
            task_id = await conn.fetchval(
                """
                INSERT INTO timetable.task (chain_id, task_order, kind, command)
                SELECT chain_id, task_order + $4, $1::timetable.command_kind, $2
                FROM timetable.task WHERE task_id = $3
                RETURNING task_id
                """,
                CommandKind(kind).value,
                command,
                parent_id,
                float(order_delta),
            )

        if task_id is None:
            raise TaskNotFoundError(parent_id, f"Parent task {parent_id} not found")
        return task_id

    async def move_task_up(self, task_id: int) -> bool:
        """Swap the order of a task with the previous task within its chain."""
        return await self._swap_with_neighbour(task_id, "<")

    async def move_task_down(self, task_id: int) -> bool:
        """Swap the order of a task with the following task within its chain."""
        return await self._swap_with_neighbour(task_id, ">")

    async def _swap_with_neighbour(self, task_id: int, direction: str) -> bool:
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT task_id, chain_id, task_order FROM timetable.task
                    WHERE task_id = $1
                    FOR UPDATE
                    """,
                    task_id,
                )
                if current is None or current["chain_id"] is None:
                    return False

                neighbour = await conn.fetchrow(
                    f"""
                    SELECT task_id, task_order FROM timetable.task
                    WHERE chain_id = $1 AND task_order {direction} $2
                    ORDER BY abs(task_order - $2), task_id
                    LIMIT 1
                    FOR UPDATE
                    """,
                    current["chain_id"],
                    current["task_order"],
                )
                if neighbour is None:
                    return False

                await conn.execute(
                    """
                    UPDATE timetable.task
                    SET task_order = CASE task_id
                        WHEN $1 THEN $3::double precision
                        ELSE $4::double precision
                    END
                    WHERE task_id IN ($1, $2)
                    """,
                    current["task_id"],
                    neighbour["task_id"],
                    neighbour["task_order"],
                    current["task_order"],
                )
        return True

    async def delete_job(self, name: str) -> bool:
        """Delete the chain and its tasks. Returns whether the chain existed."""
        async with self.db_pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM timetable.chain WHERE chain_name = $1 RETURNING chain_id",
                name,
            )
        return deleted is not None

    async def delete_chain(self, chain_id: int) -> bool:
        """Delete a chain by ID. Returns whether the chain existed."""
        async with self.db_pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM timetable.chain WHERE chain_id = $1 RETURNING chain_id",
                chain_id,
            )
        return deleted is not None

    async def delete_task(self, task_id: int) -> bool:
        """Delete a task from its chain. Returns whether the task existed."""
        async with self.db_pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM timetable.task WHERE task_id = $1 RETURNING task_id",
                task_id,
            )
        return deleted is not None

    async def get_chain(self, chain_id: int) -> Chain:
        """Get a chain by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CHAIN_COLUMNS} FROM timetable.chain WHERE chain_id = $1",
                chain_id,
            )

        if not row:
            raise ChainNotFoundError(str(chain_id))
        return self._row_to_chain(row)

    async def get_chain_by_name(self, name: str) -> Chain:
        """Get a chain by its unique name."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CHAIN_COLUMNS} FROM timetable.chain WHERE chain_name = $1",
                name,
            )

        if not row:
            raise ChainNotFoundError(name)
        return self._row_to_chain(row)

    async def list_chains(
        self, live_only: bool = False, client_name: Optional[str] = None
    ) -> List[Chain]:
        """
        List chains ordered by ID.

        With ``client_name`` only chains assigned to that client or to no
        client are returned.
        """
        query = f"SELECT {_CHAIN_COLUMNS} FROM timetable.chain WHERE TRUE"
        params = []

        if live_only:
            query += " AND live"

        if client_name:
            params.append(client_name)
            query += f" AND (client_name IS NULL OR client_name = ${len(params)})"

        query += " ORDER BY chain_id"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_chain(row) for row in rows]

    async def set_chain_live(self, name: str, live: bool) -> None:
        """Pause or resume scheduling of a chain."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE timetable.chain SET live = $2 WHERE chain_name = $1",
                name,
                live,
            )
        if result == "UPDATE 0":
            raise ChainNotFoundError(name)

    async def get_task(self, task_id: int) -> Task:
        """Get a task by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TASK_COLUMNS} FROM timetable.task WHERE task_id = $1",
                task_id,
            )

        if not row:
            raise TaskNotFoundError(task_id)
        return self._row_to_task(row)

    async def get_chain_tasks(self, chain_id: int) -> List[Task]:
        """Get the tasks of a chain in execution order."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_TASK_COLUMNS} FROM timetable.task
                WHERE chain_id = $1
                ORDER BY task_order, task_id
                """,
                chain_id,
            )

        return [self._row_to_task(row) for row in rows]

    async def get_task_parameters(self, task_id: int) -> List[Parameter]:
        """Get the parameters of a task ordered by position."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT task_id, order_id, value FROM timetable.parameter
                WHERE task_id = $1
                ORDER BY order_id
                """,
                task_id,
            )

        return [
            Parameter(
                task_id=row["task_id"],
                order_id=row["order_id"],
                value=_decode_json(row["value"]),
            )
            for row in rows
        ]

    async def set_task_parameters(self, task_id: int, values: List[Any]) -> None:
        """Replace the parameters of a task with ``values`` (order_id 1..n)."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM timetable.task WHERE task_id = $1", task_id
                )
                if not exists:
                    raise TaskNotFoundError(task_id)
                await conn.execute(
                    "DELETE FROM timetable.parameter WHERE task_id = $1", task_id
                )
                await conn.executemany(
                    """
                    INSERT INTO timetable.parameter (task_id, order_id, value)
                    VALUES ($1, $2, $3::jsonb)
                    """,
                    [
                        (task_id, order_id, json.dumps(value))
                        for order_id, value in enumerate(values, start=1)
                    ],
                )

    async def insert_log(
        self,
        level: LogLevel,
        message: str,
        client_name: Optional[str] = None,
        message_data: Optional[dict] = None,
    ) -> None:
        """Append an entry to the log table."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO timetable.log (pid, log_level, client_name, message, message_data)
                VALUES (pg_backend_pid(), $1::timetable.log_type, $2, $3, $4::jsonb)
                """,
                LogLevel(level).value,
                client_name,
                message,
                json.dumps(message_data) if message_data is not None else None,
            )

    async def insert_execution_log(
        self,
        chain_id: int,
        task: Task,
        client_name: str,
        started_at: datetime,
        finished_at: datetime,
        returncode: int,
        output: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> None:
        """Append the outcome of one task run to the execution log."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO timetable.execution_log (
                    chain_id, task_id, last_run, finished, pid, returncode,
                    kind, command, output, client_name
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::timetable.command_kind, $8, $9, $10)
                """,
                chain_id,
                task.task_id,
                started_at,
                finished_at,
                pid,
                returncode,
                task.kind.value,
                task.command,
                output,
                client_name,
            )

    def _row_to_chain(self, row: asyncpg.Record) -> Chain:
        """Convert a database row to a Chain model."""
        return Chain(
            chain_id=row["chain_id"],
            chain_name=row["chain_name"],
            run_at=row["run_at"],
            max_instances=row["max_instances"],
            timeout=row["timeout"],
            live=row["live"],
            self_destruct=row["self_destruct"],
            exclusive_execution=row["exclusive_execution"],
            client_name=row["client_name"],
        )

    def _row_to_task(self, row: asyncpg.Record) -> Task:
        """Convert a database row to a Task model."""
        return Task(
            task_id=row["task_id"],
            chain_id=row["chain_id"],
            task_order=row["task_order"],
            task_name=row["task_name"],
            kind=CommandKind(row["kind"]),
            command=row["command"],
            run_as=row["run_as"],
            database_connection=row["database_connection"],
            ignore_error=row["ignore_error"],
            autonomous=row["autonomous"],
            timeout=row["timeout"],
        )


def _decode_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value

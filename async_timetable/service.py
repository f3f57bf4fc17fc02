"""High-level service layer for timetable operations."""

import logging
import os
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from async_timetable import cron
from async_timetable.config import TimetableConfig
from async_timetable.errors import CronFormatError, LockDeniedError
from async_timetable.models import (
    ActiveSession,
    Chain,
    ChainTask,
    CommandKind,
    LogLevel,
    Task,
)
from async_timetable.notifications import ChainNotification, NotificationPublisher
from async_timetable.session import SessionCoordinator
from async_timetable.store import DEFAULT_TASK_ORDER, TimetableStore


class TimetableService:
    """High-level API over chains, sessions and notifications."""

    def __init__(
        self,
        config: TimetableConfig,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        session_conn: Optional[asyncpg.Connection] = None,
    ):
        self.config = config
        self.db_pool = db_pool
        self.store = TimetableStore(db_pool)
        self.sessions = SessionCoordinator(
            db_pool, config.create_liveness_oracle(), conn=session_conn
        )
        self.publisher = NotificationPublisher(db_pool)
        self.logger = logger or logging.getLogger(__name__)

    async def add_job(
        self,
        *,
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
        Add a one-task chain.

        Args:
            name: Unique chain name
            schedule: Extended cron schedule, or None for a chain that only
                runs when notified
            command: Command of the single task
            parameters: JSON value stored as the task's first parameter
            kind: Command kind of the task
            client_name: Only this worker may run the chain
            max_instances: Bound on parallel runs across workers
            live: Whether the chain is scheduled right away
            self_destruct: Delete the chain after one successful run
            ignore_errors: Mark the task's failure as non-fatal
            exclusive: Pause other chains of the worker while this one runs

        Returns:
            int: The created chain ID

        Raises:
            CronFormatError: If the schedule is not a valid extended cron
        """
        if schedule is not None:
            # the cron domain rejects surrounding whitespace
            schedule = schedule.strip()
        if schedule is not None and not cron.is_valid_cron(schedule):
            raise CronFormatError(schedule, f"Invalid schedule {schedule!r}")

        chain_id = await self.store.add_job(
            name=name,
            schedule=schedule,
            command=command,
            parameters=parameters,
            kind=kind,
            client_name=client_name,
            max_instances=max_instances,
            live=live,
            self_destruct=self_destruct,
            ignore_errors=ignore_errors,
            exclusive=exclusive,
        )

        self.logger.info(f"Added job {name} as chain {chain_id} scheduled at {schedule}")
        return chain_id

    async def add_task(
        self,
        kind: CommandKind,
        command: str,
        parent_id: int,
        order_delta: float = DEFAULT_TASK_ORDER,
    ) -> int:
        """Add a task to the chain of ``parent_id``, ``order_delta`` after it."""
        task_id = await self.store.add_task(kind, command, parent_id, order_delta)
        self.logger.info(f"Added task {task_id} after task {parent_id}")
        return task_id

    async def move_task_up(self, task_id: int) -> bool:
        return await self.store.move_task_up(task_id)

    async def move_task_down(self, task_id: int) -> bool:
        return await self.store.move_task_down(task_id)

    async def delete_job(self, name: str) -> bool:
        deleted = await self.store.delete_job(name)
        if deleted:
            self.logger.info(f"Deleted job {name}")
        return deleted

    async def delete_task(self, task_id: int) -> bool:
        deleted = await self.store.delete_task(task_id)
        if deleted:
            self.logger.info(f"Deleted task {task_id}")
        return deleted

    async def get_chain(self, chain_id: int) -> Chain:
        return await self.store.get_chain(chain_id)

    async def list_chains(
        self, *, live_only: bool = False, client_name: Optional[str] = None
    ) -> List[Chain]:
        return await self.store.list_chains(live_only=live_only, client_name=client_name)

    async def get_chain_tasks(self, chain_id: int) -> List[ChainTask]:
        """Load a chain's tasks in order with their resolved parameter values."""
        tasks: List[Task] = await self.store.get_chain_tasks(chain_id)
        chain_tasks = []
        for task in tasks:
            parameters = await self.store.get_task_parameters(task.task_id)
            chain_tasks.append(ChainTask(task, [p.value for p in parameters]))
        return chain_tasks

    async def next_run(self, chain_id: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Next scheduled run of a chain.

        None for chains without a five-field schedule or without a match in
        the lookahead horizon.
        """
        chain = await self.store.get_chain(chain_id)
        if chain.run_at is None or cron.special_schedule(chain.run_at) is not None:
            return None
        return cron.next_run(chain.run_at, now)

    async def lock_client_name(self, client_pid: Optional[int] = None) -> None:
        """
        Claim the configured client name for this worker process.

        Raises:
            LockDeniedError: If another live worker holds the name or the
                database is a read-only replica
        """
        client_pid = client_pid or os.getpid()
        client_name = self.config.client_name
        if not await self.sessions.try_acquire(client_pid, client_name):
            raise LockDeniedError(client_name)
        self.logger.info(f"Locked client name {client_name} for pid {client_pid}")

    async def list_active_sessions(self) -> List[ActiveSession]:
        return await self.sessions.list_active_sessions()

    async def notify_chain_start(self, chain_id: int, worker_name: str) -> ChainNotification:
        """Push a START command for an existing chain to a worker."""
        await self.store.get_chain(chain_id)
        return await self.publisher.notify_chain_start(chain_id, worker_name)

    async def notify_chain_stop(self, chain_id: int, worker_name: str) -> ChainNotification:
        """Push a STOP command for an existing chain to a worker."""
        await self.store.get_chain(chain_id)
        return await self.publisher.notify_chain_stop(chain_id, worker_name)

    async def log(self, level: LogLevel, message: str, **message_data: Any) -> None:
        """Write a row to the log table on behalf of this worker."""
        await self.store.insert_log(
            level,
            message,
            client_name=self.config.client_name,
            message_data=message_data or None,
        )

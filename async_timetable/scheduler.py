"""Scheduler loop for timetable workers."""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple

import asyncpg
from pydantic import ValidationError

from async_timetable import cron
from async_timetable.config import LIVENESS_LEASE, TimetableConfig
from async_timetable.errors import (
    ChainNotFoundError,
    CronFormatError,
    CronRangeError,
    LockDeniedError,
    ParameterValidationError,
)
from async_timetable.models import Chain, ChainCommand, LogLevel
from async_timetable.notifications import ChainNotification
from async_timetable.registry import BuiltinRegistry, ChainExecutor, builtin_registry
from async_timetable.service import TimetableService


class ChainScheduler:
    """
    Runs the chains assigned to one worker.

    Cron chains are checked once per tick, ``@every`` and ``@after`` chains
    get their own interval loops, ``@reboot`` chains run once at startup and
    START/STOP notifications on the worker's channel are honoured between
    ticks.
    """

    def __init__(
        self,
        config: TimetableConfig,
        service: TimetableService,
        executor: ChainExecutor,
        logger: logging.Logger,
        registry: Optional[BuiltinRegistry] = None,
        client_pid: Optional[int] = None,
    ):
        self.config = config
        self.service = service
        self.executor = executor
        self.logger = logger
        self.registry = registry or builtin_registry
        self.client_pid = client_pid or os.getpid()
        self.client_name = config.client_name
        self.shutdown_event = asyncio.Event()
        self._running: Dict[int, Set[asyncio.Task]] = {}
        self._interval_loops: Dict[int, Tuple[str, asyncio.Task]] = {}
        self._last_tick: Optional[datetime] = None
        self._background: Set[asyncio.Task] = set()
        self._launch_lock = asyncio.Lock()

    async def acquire_lock(self) -> bool:
        """Retry locking the client name until it succeeds or shutdown is signalled."""
        while not self.shutdown_event.is_set():
            try:
                await self.service.lock_client_name(self.client_pid)
                return True
            except LockDeniedError as e:
                self.logger.warning(
                    f"{e}, retrying in {self.config.reconnect_seconds}s"
                )
            if await self._wait(self.config.reconnect_seconds):
                break
        return False

    async def tick(self, now: datetime) -> None:
        """Start every due cron chain and keep interval loops in sync."""
        now = now.replace(second=0, microsecond=0)
        first_tick = self._last_tick is None
        if self._last_tick == now:
            return
        chains = await self.service.list_chains(live_only=True, client_name=self.client_name)
        self._last_tick = now
        self._sync_interval_loops(chains)

        for chain in chains:
            if chain.run_at is None:
                continue
            try:
                special = cron.special_schedule(chain.run_at)
                due = special is None and cron.is_cron_in_time(chain.run_at, now)
            except (CronFormatError, CronRangeError) as e:
                self.logger.error(f"Chain {chain.chain_name} has an invalid schedule: {e}")
                continue
            if special is not None and special.kind == cron.REBOOT and first_tick:
                await self.launch(chain)
            elif due:
                await self.launch(chain)

    async def launch(self, chain: Chain) -> Optional[asyncio.Task]:
        """
        Start a chain in the background if the active-chain state allows it.

        The check and the active-chain marker are taken under one lock and
        before the task is created, so chains launched afterwards in the
        same tick or by a notification see the marker in can_run.
        """
        async with self._launch_lock:
            if self.shutdown_event.is_set() or not await self.can_run(chain):
                return None
            await self.service.sessions.add_active_chain(chain.chain_id, self.client_name)
        task = asyncio.create_task(self._execute(chain))
        running = self._running.setdefault(chain.chain_id, set())
        running.add(task)
        task.add_done_callback(running.discard)
        task.add_done_callback(lambda _: self._remove_marker(chain.chain_id))
        return task

    def _remove_marker(self, chain_id: int) -> None:
        self._spawn(self.service.sessions.remove_active_chain(chain_id, self.client_name))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def can_run(self, chain: Chain) -> bool:
        sessions = self.service.sessions
        if await sessions.is_exclusive_chain_running(self.client_name):
            self.logger.info(
                f"Chain {chain.chain_name} postponed: an exclusive chain is running"
            )
            return False
        if chain.exclusive_execution and await sessions.list_active_chains(self.client_name):
            self.logger.info(
                f"Exclusive chain {chain.chain_name} postponed: other chains are running"
            )
            return False
        if chain.max_instances:
            active = await sessions.count_active_chains(chain.chain_id)
            if active >= chain.max_instances:
                self.logger.info(
                    f"Chain {chain.chain_name} skipped: {active} of "
                    f"{chain.max_instances} instances already running"
                )
                return False
        return True

    async def run_chain(self, chain: Chain) -> bool:
        """
        Run one instance of a chain in the foreground, holding its
        active-chain marker while it runs.

        Returns:
            True when the executor reported success
        """
        sessions = self.service.sessions
        await sessions.add_active_chain(chain.chain_id, self.client_name)
        try:
            return await self._execute(chain)
        finally:
            await asyncio.shield(sessions.remove_active_chain(chain.chain_id, self.client_name))

    async def _execute(self, chain: Chain) -> bool:
        succeeded = False
        try:
            chain_tasks = []
            for chain_task in await self.service.get_chain_tasks(chain.chain_id):
                try:
                    self.registry.validate_parameters(chain_task)
                except ParameterValidationError as e:
                    if not chain_task.task.ignore_error:
                        raise
                    self.logger.warning(f"Skipping task: {e}")
                    continue
                chain_tasks.append(chain_task)

            self.logger.info(f"Starting chain {chain.chain_name} ({len(chain_tasks)} tasks)")
            run = self.executor(chain, chain_tasks)
            if chain.timeout:
                succeeded = await asyncio.wait_for(run, timeout=chain.timeout / 1000)
            else:
                succeeded = await run

            if succeeded:
                await self.service.log(
                    LogLevel.INFO, "Chain executed successfully", chain=chain.chain_id
                )
                if chain.self_destruct:
                    await self.service.store.delete_chain(chain.chain_id)
                    self.logger.info(f"Self-destructed chain {chain.chain_name}")
            else:
                await self.service.log(LogLevel.ERROR, "Chain failed", chain=chain.chain_id)

        except asyncio.CancelledError:
            self.logger.info(f"Chain {chain.chain_name} stopped")
            raise
        except asyncio.TimeoutError:
            self.logger.error(f"Chain {chain.chain_name} timed out after {chain.timeout}ms")
            await self.service.log(LogLevel.ERROR, "Chain timed out", chain=chain.chain_id)
        except Exception as e:
            self.logger.error(f"Chain {chain.chain_name} failed: {e}", exc_info=True)
            await self.service.log(
                LogLevel.ERROR, "Chain failed", chain=chain.chain_id, error=str(e)
            )
        return succeeded

    def stop_chain(self, chain_id: int) -> int:
        """Cancel the running instances of a chain. Returns how many were cancelled."""
        tasks = list(self._running.get(chain_id, ()))
        for task in tasks:
            task.cancel()
        return len(tasks)

    def on_notification(self, connection, pid: int, channel: str, payload: str) -> None:
        """asyncpg listener for START/STOP commands."""
        try:
            notification = ChainNotification.model_validate_json(payload)
        except ValidationError as e:
            self.logger.warning(f"Ignoring malformed notification on {channel}: {e}")
            return

        self.logger.info(
            f"Received {notification.command.value} for chain {notification.chain_id}"
        )
        if notification.command == ChainCommand.STOP:
            self.stop_chain(notification.chain_id)
        else:
            self._spawn(self._start_notified(notification.chain_id))

    async def _start_notified(self, chain_id: int) -> None:
        try:
            chain = await self.service.get_chain(chain_id)
            await self.launch(chain)
        except Exception as e:
            self.logger.error(f"Cannot start chain {chain_id}: {e}", exc_info=True)

    def _sync_interval_loops(self, chains) -> None:
        wanted = {}
        for chain in chains:
            try:
                special = cron.special_schedule(chain.run_at)
            except (CronFormatError, CronRangeError):
                continue
            if special is not None and special.kind in (cron.EVERY, cron.AFTER):
                wanted[chain.chain_id] = (chain, special)

        for chain_id, (run_at, task) in list(self._interval_loops.items()):
            if chain_id not in wanted or wanted[chain_id][0].run_at != run_at:
                del self._interval_loops[chain_id]
                task.cancel()

        for chain_id, (chain, special) in wanted.items():
            if chain_id not in self._interval_loops:
                self._interval_loops[chain_id] = (
                    chain.run_at,
                    asyncio.create_task(self._interval_loop(chain, special)),
                )

    async def _interval_loop(self, chain: Chain, special: cron.SpecialSchedule) -> None:
        seconds = special.interval.total_seconds()
        while not await self._wait(seconds):
            try:
                # pick up edits to the chain made since the loop started
                chain = await self.service.get_chain(chain.chain_id)
                if not chain.live:
                    continue
                task = await self.launch(chain)
            except ChainNotFoundError:
                self.logger.info(f"Chain {chain.chain_name} deleted, stopping its interval loop")
                return
            except Exception as e:
                self.logger.error(f"Cannot start chain {chain.chain_name}: {e}", exc_info=True)
                continue
            # @after measures the interval from the end of the previous run
            if special.kind == cron.AFTER and task is not None:
                await asyncio.wait([task])

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if shutdown was signalled meanwhile."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def heartbeat(self) -> None:
        if self.config.liveness != LIVENESS_LEASE:
            return
        if not await self.service.sessions.heartbeat(self.client_pid, self.client_name):
            self.logger.warning("Session lease lost, locking client name again")
            await self.acquire_lock()

    async def run(self, session_conn: asyncpg.Connection) -> None:
        """Lock the client name and run ticks until shutdown."""
        if not await self.acquire_lock():
            return

        await session_conn.add_listener(self.client_name, self.on_notification)
        self.logger.info(f"Listening for commands on channel {self.client_name}")
        try:
            while not self.shutdown_event.is_set():
                try:
                    await self.heartbeat()
                except Exception as e:
                    self.logger.error(f"Session heartbeat failed: {e}", exc_info=True)
                try:
                    await self.tick(datetime.now(timezone.utc))
                except Exception as e:
                    self.logger.error(f"Error in scheduler loop: {str(e)}", exc_info=True)

                tick = self.config.tick_seconds
                await self._wait(tick - time.time() % tick)
        finally:
            await self.shutdown()
            await session_conn.remove_listener(self.client_name, self.on_notification)
            await self.service.sessions.release(self.client_pid, self.client_name)

    async def shutdown(self) -> None:
        """Cancel interval loops and running chains."""
        self.shutdown_event.set()
        pending = [task for _, task in self._interval_loops.values()]
        for tasks in self._running.values():
            pending.extend(tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._interval_loops.clear()
        # marker removals spawned by the cancelled chains
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


async def run_scheduler_loop(
    config: TimetableConfig,
    db_pool: asyncpg.Pool,
    session_conn: asyncpg.Connection,
    executor: ChainExecutor,
    logger: logging.Logger,
    registry: Optional[BuiltinRegistry] = None,
    shutdown_event: asyncio.Event = None,
) -> None:
    """
    Run the scheduler loop of one worker.

    Args:
        config: Timetable configuration
        db_pool: Database connection pool
        session_conn: Dedicated connection owning the worker's session and
            receiving notifications
        executor: Coroutine function receiving a chain and its ordered tasks
        logger: Logger instance
        registry: Built-in registry used to validate task parameters
        shutdown_event: Optional event to signal shutdown
    """
    service = TimetableService(config, db_pool, logger, session_conn=session_conn)
    scheduler = ChainScheduler(config, service, executor, logger, registry=registry)

    if shutdown_event is not None:
        async def propagate_shutdown():
            await shutdown_event.wait()
            logger.info("Shutdown signal received, exiting scheduler loop")
            scheduler.shutdown_event.set()

        watcher = asyncio.create_task(propagate_shutdown())
    else:
        watcher = None

    logger.info(f"Starting scheduler loop for client {config.client_name}")
    try:
        await scheduler.run(session_conn)
    finally:
        if watcher is not None:
            watcher.cancel()

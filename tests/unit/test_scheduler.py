"""Unit tests for scheduler module."""

import asyncio
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from async_timetable import cron
from async_timetable.config import LIVENESS_LEASE, TimetableConfig
from async_timetable.errors import ChainNotFoundError, LockDeniedError
from async_timetable.models import ActiveChain, Chain, ChainTask, CommandKind, LogLevel, Task
from async_timetable.scheduler import ChainScheduler

logger = logging.getLogger("test_scheduler")


def make_service(chains=()):
    """Service double with every coroutine the scheduler awaits."""
    service = MagicMock()
    service.list_chains = AsyncMock(return_value=list(chains))
    service.get_chain_tasks = AsyncMock(return_value=[])
    service.get_chain = AsyncMock()
    service.log = AsyncMock()
    service.lock_client_name = AsyncMock()
    service.store.delete_chain = AsyncMock(return_value=True)

    sessions = service.sessions
    sessions.add_active_chain = AsyncMock()
    sessions.remove_active_chain = AsyncMock()
    sessions.is_exclusive_chain_running = AsyncMock(return_value=False)
    sessions.list_active_chains = AsyncMock(return_value=[])
    sessions.count_active_chains = AsyncMock(return_value=0)
    sessions.heartbeat = AsyncMock(return_value=True)
    sessions.release = AsyncMock()
    return service


@pytest.fixture
def config():
    return TimetableConfig(
        db_dsn="postgresql://localhost/test", client_name="worker01", reconnect_seconds=0
    )


@pytest.fixture
def service():
    return make_service()


@pytest.fixture
def executor():
    return AsyncMock(return_value=True)


@pytest.fixture
def scheduler(config, service, executor):
    return ChainScheduler(config, service, executor, logger, client_pid=1234)


def chain(chain_id, run_at, **kwargs):
    return Chain(chain_id=chain_id, chain_name=f"chain-{chain_id}", run_at=run_at, live=True, **kwargs)


@pytest.mark.asyncio
async def test_tick_launches_due_and_reboot_chains(scheduler, service):
    """Test that a tick starts due cron chains, and @reboot chains only once."""
    service.list_chains.return_value = [
        chain(1, "0 5 * * *"),
        chain(2, "0 6 * * *"),
        chain(3, "@reboot"),
        chain(4, None),
        chain(5, "not a schedule"),
    ]
    scheduler.launch = AsyncMock()

    await scheduler.tick(datetime(2024, 1, 1, 5, 0, 30, tzinfo=timezone.utc))

    launched = [call.args[0].chain_id for call in scheduler.launch.await_args_list]
    assert launched == [1, 3]
    service.list_chains.assert_awaited_once_with(live_only=True, client_name="worker01")

    scheduler.launch.reset_mock()
    await scheduler.tick(datetime(2024, 1, 2, 5, 0, tzinfo=timezone.utc))
    assert [call.args[0].chain_id for call in scheduler.launch.await_args_list] == [1]


@pytest.mark.asyncio
async def test_tick_skips_repeated_minute(scheduler, service):
    scheduler.launch = AsyncMock()

    await scheduler.tick(datetime(2024, 1, 1, 5, 0, 1, tzinfo=timezone.utc))
    await scheduler.tick(datetime(2024, 1, 1, 5, 0, 59, tzinfo=timezone.utc))

    assert service.list_chains.await_count == 1


@pytest.mark.asyncio
async def test_can_run_checks_active_chains(scheduler, service):
    """Test the exclusive and max_instances rules."""
    sessions = service.sessions

    assert await scheduler.can_run(chain(1, "* * * * *"))

    sessions.is_exclusive_chain_running.return_value = True
    assert not await scheduler.can_run(chain(1, "* * * * *"))
    sessions.is_exclusive_chain_running.return_value = False

    sessions.list_active_chains.return_value = [ActiveChain(2, "worker01")]
    assert not await scheduler.can_run(chain(1, "* * * * *", exclusive_execution=True))
    assert await scheduler.can_run(chain(1, "* * * * *"))

    sessions.count_active_chains.return_value = 2
    assert not await scheduler.can_run(chain(1, "* * * * *", max_instances=2))
    assert await scheduler.can_run(chain(1, "* * * * *", max_instances=3))


@pytest.mark.asyncio
async def test_run_chain_success_self_destructs(scheduler, service, executor):
    """Test a successful run of a self-destructing chain."""
    target = chain(1, None, self_destruct=True)
    task = Task(task_id=11, chain_id=1, task_order=10, command="Log", kind=CommandKind.BUILTIN)
    service.get_chain_tasks.return_value = [ChainTask(task, ["hi"])]

    assert await scheduler.run_chain(target) is True

    executor.assert_awaited_once_with(target, [ChainTask(task, ["hi"])])
    service.sessions.add_active_chain.assert_awaited_once_with(1, "worker01")
    service.sessions.remove_active_chain.assert_awaited_once_with(1, "worker01")
    assert service.log.await_args.args[0] == LogLevel.INFO
    service.store.delete_chain.assert_awaited_once_with(1)


@pytest.mark.asyncio
async def test_run_chain_failure_keeps_chain(scheduler, service, executor):
    executor.return_value = False

    assert await scheduler.run_chain(chain(1, None, self_destruct=True)) is False

    assert service.log.await_args.args[0] == LogLevel.ERROR
    service.store.delete_chain.assert_not_awaited()
    service.sessions.remove_active_chain.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_chain_timeout(config, service):
    async def slow_executor(chain, tasks):
        await asyncio.sleep(5)
        return True

    scheduler = ChainScheduler(config, service, slow_executor, logger)

    assert await scheduler.run_chain(chain(1, None, timeout=10)) is False
    assert service.log.await_args.args[1] == "Chain timed out"
    service.sessions.remove_active_chain.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_chain_rejects_invalid_parameters(scheduler, service, executor):
    """Test that a built-in with bad parameters aborts the chain."""
    task = Task(task_id=11, chain_id=1, task_order=10, command="Sleep", kind=CommandKind.BUILTIN)
    service.get_chain_tasks.return_value = [ChainTask(task, [-1])]

    assert await scheduler.run_chain(chain(1, None)) is False
    executor.assert_not_awaited()

    task.ignore_error = True
    assert await scheduler.run_chain(chain(1, None)) is True
    assert executor.await_args.args[1] == []


@pytest.mark.asyncio
async def test_stop_notification_cancels_running_chain(config, service):
    started = asyncio.Event()

    async def blocking_executor(chain, tasks):
        started.set()
        await asyncio.sleep(3600)
        return True

    scheduler = ChainScheduler(config, service, blocking_executor, logger)
    task = await scheduler.launch(chain(1, None))
    await started.wait()

    scheduler.on_notification(None, 1, "worker01", '{"ConfigID": 1, "Command": "STOP", "Ts": 1}')

    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.gather(*scheduler._background)
    service.sessions.add_active_chain.assert_awaited_once_with(1, "worker01")
    service.sessions.remove_active_chain.assert_awaited_once_with(1, "worker01")


@pytest.mark.asyncio
async def test_start_notification_launches_chain(scheduler, service, executor):
    service.get_chain.return_value = chain(7, None)

    scheduler.on_notification(None, 1, "worker01", '{"ConfigID": 7, "Command": "START", "Ts": 1}')
    await asyncio.gather(*scheduler._background)
    await asyncio.gather(*scheduler._running[7])

    service.get_chain.assert_awaited_once_with(7)
    executor.assert_awaited_once()


def test_malformed_notification_is_ignored(scheduler):
    scheduler.on_notification(None, 1, "worker01", "not json")
    scheduler.on_notification(None, 1, "worker01", '{"ConfigID": 1, "Command": "PAUSE", "Ts": 1}')
    assert not scheduler._background


@pytest.mark.asyncio
async def test_interval_loops_follow_chains(scheduler):
    """Test that @every and @after chains get a loop that stops when they go away."""
    scheduler._sync_interval_loops(
        [chain(1, "@every 1 hour"), chain(2, "@after 10 minutes"), chain(3, "0 5 * * *")]
    )
    assert set(scheduler._interval_loops) == {1, 2}

    _, loop = scheduler._interval_loops[1]
    scheduler._sync_interval_loops([chain(2, "@after 10 minutes")])
    assert set(scheduler._interval_loops) == {2}

    await asyncio.gather(loop, return_exceptions=True)
    assert loop.cancelled()

    await scheduler.shutdown()
    assert scheduler._interval_loops == {}


@pytest.mark.asyncio
async def test_acquire_lock_retries(scheduler, service):
    service.lock_client_name.side_effect = [LockDeniedError("worker01"), None]

    assert await scheduler.acquire_lock() is True
    assert service.lock_client_name.await_count == 2
    service.lock_client_name.assert_awaited_with(1234)


@pytest.mark.asyncio
async def test_heartbeat_only_in_lease_mode(scheduler, service, executor):
    await scheduler.heartbeat()
    service.sessions.heartbeat.assert_not_awaited()

    lease_config = TimetableConfig(
        db_dsn="postgresql://localhost/test", client_name="worker01", liveness=LIVENESS_LEASE
    )
    lease_scheduler = ChainScheduler(lease_config, service, executor, logger, client_pid=1234)
    service.sessions.heartbeat.return_value = False

    await lease_scheduler.heartbeat()

    service.sessions.heartbeat.assert_awaited_once_with(1234, "worker01")
    service.lock_client_name.assert_awaited_once_with(1234)


@pytest.mark.asyncio
async def test_run_listens_and_releases(scheduler, service):
    """Test the lifecycle of the scheduler loop."""
    session_conn = MagicMock()
    session_conn.add_listener = AsyncMock()
    session_conn.remove_listener = AsyncMock()

    async def tick_once(now):
        scheduler.shutdown_event.set()

    scheduler.tick = tick_once

    await scheduler.run(session_conn)

    session_conn.add_listener.assert_awaited_once_with("worker01", scheduler.on_notification)
    session_conn.remove_listener.assert_awaited_once_with("worker01", scheduler.on_notification)
    service.sessions.release.assert_awaited_once_with(1234, "worker01")


class InMemorySessions:
    """Active-chain bookkeeping double that yields to the loop on every query."""

    def __init__(self, chains):
        self.chains = {c.chain_id: c for c in chains}
        self.active = []

    async def add_active_chain(self, chain_id, client_name):
        await asyncio.sleep(0)
        self.active.append(ActiveChain(chain_id, client_name))

    async def remove_active_chain(self, chain_id, client_name):
        await asyncio.sleep(0)
        for active in self.active:
            if active.chain_id == chain_id:
                self.active.remove(active)
                break

    async def is_exclusive_chain_running(self, client_name):
        await asyncio.sleep(0)
        return any(self.chains[a.chain_id].exclusive_execution for a in self.active)

    async def list_active_chains(self, client_name=None):
        await asyncio.sleep(0)
        return list(self.active)

    async def count_active_chains(self, chain_id=None):
        await asyncio.sleep(0)
        return len([a for a in self.active if a.chain_id == chain_id])


@pytest.mark.asyncio
async def test_exclusive_chain_blocks_chains_due_in_same_tick(config):
    """Test that an exclusive chain started by a tick keeps later due chains out."""
    chains = [chain(1, "* * * * *", exclusive_execution=True), chain(2, "* * * * *")]
    service = make_service(chains)
    service.sessions = InMemorySessions(chains)
    seen = []

    async def recording_executor(chain, tasks):
        seen.append({a.chain_id for a in service.sessions.active})
        await asyncio.sleep(0.01)
        return True

    scheduler = ChainScheduler(config, service, recording_executor, logger)
    await scheduler.tick(datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc))
    await asyncio.gather(*[t for tasks in scheduler._running.values() for t in tasks])
    await asyncio.gather(*scheduler._background)

    assert seen == [{1}]
    assert service.sessions.active == []


@pytest.mark.asyncio
async def test_max_instances_holds_for_back_to_back_launches(config):
    limited = chain(1, None, max_instances=1)
    service = make_service([limited])
    service.sessions = InMemorySessions([limited])
    release = asyncio.Event()

    async def blocking_executor(chain, tasks):
        await release.wait()
        return True

    scheduler = ChainScheduler(config, service, blocking_executor, logger)
    first, second = await asyncio.gather(scheduler.launch(limited), scheduler.launch(limited))

    assert (first is None) != (second is None)
    assert len(service.sessions.active) == 1

    release.set()
    await asyncio.gather(*[t for t in (first, second) if t is not None])
    await asyncio.gather(*scheduler._background)
    assert service.sessions.active == []


@pytest.mark.asyncio
async def test_no_launch_after_shutdown(scheduler, service):
    scheduler.shutdown_event.set()

    assert await scheduler.launch(chain(1, None)) is None
    service.sessions.add_active_chain.assert_not_awaited()


@pytest.mark.asyncio
async def test_interval_loop_restarts_when_schedule_changes(scheduler, monkeypatch):
    """Test that editing an @every schedule replaces the running loop."""
    intervals = []

    async def fake_loop(chain, special):
        intervals.append(special.interval.total_seconds())
        await asyncio.sleep(3600)

    monkeypatch.setattr(scheduler, "_interval_loop", fake_loop)

    scheduler._sync_interval_loops([chain(7, "@every 1 hour")])
    _, hourly = scheduler._interval_loops[7]
    await asyncio.sleep(0)
    scheduler._sync_interval_loops([chain(7, "@every 1 hour")])
    scheduler._sync_interval_loops([chain(7, "@every 1 minute")])
    await asyncio.sleep(0)

    assert intervals == [3600.0, 60.0]
    assert scheduler._interval_loops[7][0] == "@every 1 minute"
    await asyncio.gather(hourly, return_exceptions=True)
    assert hourly.cancelled()

    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_interval_loop_launches_fresh_chain(scheduler, service, monkeypatch):
    """Test that the loop re-reads the chain before each launch and stops once it is gone."""
    updated = chain(7, "@every 1 second", max_instances=3)
    service.get_chain.side_effect = [updated, ChainNotFoundError(7)]
    scheduler.launch = AsyncMock(return_value=None)
    monkeypatch.setattr(scheduler, "_wait", AsyncMock(return_value=False))

    await scheduler._interval_loop(
        chain(7, "@every 1 second"), cron.special_schedule("@every 1 second")
    )

    scheduler.launch.assert_awaited_once_with(updated)
    assert service.get_chain.await_count == 2


@pytest.mark.asyncio
async def test_heartbeat_runs_when_tick_fails(service, executor):
    """Test that a failing tick does not starve the session lease."""
    lease_config = TimetableConfig(
        db_dsn="postgresql://localhost/test", client_name="worker01", liveness=LIVENESS_LEASE
    )
    scheduler = ChainScheduler(lease_config, service, executor, logger, client_pid=1234)
    session_conn = MagicMock()
    session_conn.add_listener = AsyncMock()
    session_conn.remove_listener = AsyncMock()
    ticks = []

    async def failing_tick(now):
        ticks.append(now)
        if len(ticks) == 2:
            scheduler.shutdown_event.set()
        raise RuntimeError("database unavailable")

    scheduler.tick = failing_tick
    scheduler._wait = AsyncMock(return_value=False)

    await scheduler.run(session_conn)

    assert len(ticks) == 2
    assert service.sessions.heartbeat.await_count == 2


@pytest.mark.asyncio
async def test_reboot_chains_run_after_failed_first_tick(scheduler, service):
    """Test that @reboot chains still start when the first chain listing fails."""
    service.list_chains.side_effect = [RuntimeError("connection reset"), [chain(3, "@reboot")]]
    scheduler.launch = AsyncMock()

    with pytest.raises(RuntimeError):
        await scheduler.tick(datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc))
    await scheduler.tick(datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc))

    assert [call.args[0].chain_id for call in scheduler.launch.await_args_list] == [3]

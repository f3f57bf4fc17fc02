"""Start/stop notifications pushed to workers over LISTEN/NOTIFY."""

import logging
import time
from typing import Optional

import asyncpg
from pydantic import BaseModel, ConfigDict, Field

from async_timetable.models import ChainCommand

logger = logging.getLogger(__name__)


class ChainNotification(BaseModel):
    """Payload sent on a worker's channel."""

    model_config = ConfigDict(populate_by_name=True)

    chain_id: int = Field(alias="ConfigID")
    command: ChainCommand = Field(alias="Command")
    ts: int = Field(alias="Ts")

    def to_payload(self) -> str:
        """Serialize with the wire field names."""
        return self.model_dump_json(by_alias=True)


class NotificationPublisher:
    """
    Broadcasts commands to workers.

    Delivery is at most once: ``pg_notify`` does not queue messages, so a
    notification sent while nobody listens on the channel is lost.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def publish(self, channel: str, message: str) -> None:
        """Send ``message`` to every session listening on ``channel``."""
        async with self.db_pool.acquire() as conn:
            await conn.execute("SELECT pg_notify($1, $2)", channel, message)

    async def notify_chain_start(
        self, chain_id: int, worker_name: str, ts: Optional[int] = None
    ) -> ChainNotification:
        """Ask the worker named ``worker_name`` to start a chain now."""
        return await self._notify(chain_id, worker_name, ChainCommand.START, ts)

    async def notify_chain_stop(
        self, chain_id: int, worker_name: str, ts: Optional[int] = None
    ) -> ChainNotification:
        """Ask the worker named ``worker_name`` to stop a running chain."""
        return await self._notify(chain_id, worker_name, ChainCommand.STOP, ts)

    async def _notify(
        self, chain_id: int, worker_name: str, command: ChainCommand, ts: Optional[int]
    ) -> ChainNotification:
        notification = ChainNotification(
            chain_id=chain_id,
            command=command,
            ts=int(time.time()) if ts is None else ts,
        )
        await self.publish(worker_name, notification.to_payload())
        logger.info(f"Sent {command.value} for chain {chain_id} to worker {worker_name}")
        return notification

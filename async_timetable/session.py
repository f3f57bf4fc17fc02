"""Session locking and active chain bookkeeping shared by all workers.

A worker claims its client name by inserting a row into
``timetable.active_session`` from a dedicated connection. Rows whose
connection is no longer alive, as reported by a liveness oracle, are pruned
by the next claim attempt together with the chains they were running.
"""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional

import asyncpg

from async_timetable.models import ActiveChain, ActiveSession

logger = logging.getLogger(__name__)


class LivenessOracle(ABC):
    """Answers which store-side connections are still alive."""

    @abstractmethod
    async def live_server_pids(self, conn: asyncpg.Connection) -> List[int]:
        """Return the backend PIDs of live worker connections."""


class PgStatActivityOracle(LivenessOracle):
    """Liveness from ``pg_stat_activity``, matched by application name."""

    def __init__(self, application_name: str):
        self.application_name = application_name

    async def live_server_pids(self, conn: asyncpg.Connection) -> List[int]:
        rows = await conn.fetch(
            """
            SELECT pid FROM pg_catalog.pg_stat_activity
            WHERE application_name = $1
            """,
            self.application_name,
        )
        return [row["pid"] for row in rows]


class LeaseLivenessOracle(LivenessOracle):
    """
    Liveness from heartbeats: a session is alive while its ``heartbeat_at``
    is younger than the lease TTL.

    Workers using this oracle must call SessionCoordinator.heartbeat() more
    often than ``ttl_seconds``.
    """

    def __init__(self, ttl_seconds: int = 60):
        self.ttl = timedelta(seconds=ttl_seconds)

    async def live_server_pids(self, conn: asyncpg.Connection) -> List[int]:
        rows = await conn.fetch(
            """
            SELECT server_pid FROM timetable.active_session
            WHERE heartbeat_at > now() - $1::interval
            """,
            self.ttl,
        )
        return [row["server_pid"] for row in rows]


class SessionCoordinator:
    """
    Arbitrates client names between worker processes.

    Args:
        db_pool: Pool used for active chain bookkeeping
        liveness_oracle: Source of truth for which sessions are alive
        conn: Dedicated connection identifying this worker's session,
            required for try_acquire, heartbeat and release
    """

    def __init__(
        self,
        db_pool: asyncpg.Pool,
        liveness_oracle: LivenessOracle,
        conn: Optional[asyncpg.Connection] = None,
    ):
        self.db_pool = db_pool
        self.liveness_oracle = liveness_oracle
        self.conn = conn

    def _session_conn(self) -> asyncpg.Connection:
        if self.conn is None:
            raise RuntimeError("Session connection not established. Pass conn= first.")
        return self.conn

    async def try_acquire(self, client_pid: int, client_name: str) -> bool:
        """
        Try to lock ``client_name`` for the worker process ``client_pid``.

        Runs as one transaction: prunes dead sessions and the active chains
        they left behind, then claims the name unless another live worker
        process holds it. Always fails on a read-only replica.

        Raises:
            ValueError: If the identity is malformed
        """
        if not isinstance(client_pid, int) or client_pid <= 0:
            raise ValueError(f"client_pid must be a positive integer, got {client_pid!r}")
        if not client_name:
            raise ValueError("client_name is required")

        conn = self._session_conn()
        async with conn.transaction():
            if await conn.fetchval("SELECT pg_is_in_recovery()"):
                logger.warning("Cannot obtain lock on a replica. Please, use the primary node")
                return False

            await conn.execute(
                "LOCK TABLE timetable.active_session IN SHARE ROW EXCLUSIVE MODE"
            )

            live_pids = await self.liveness_oracle.live_server_pids(conn)
            pruned = await conn.execute(
                """
                DELETE FROM timetable.active_session
                WHERE NOT (server_pid = ANY($1::bigint[]))
                """,
                live_pids,
            )
            if pruned != "DELETE 0":
                logger.debug(f"Pruned disconnected sessions: {pruned}")

            await conn.execute(
                """
                DELETE FROM timetable.active_chain
                WHERE client_name NOT IN (
                    SELECT client_name FROM timetable.active_session
                )
                """
            )

            held = await conn.fetchval(
                """
                SELECT 1 FROM timetable.active_session
                WHERE client_pid <> $1 AND client_name = $2
                LIMIT 1
                """,
                client_pid,
                client_name,
            )
            if held:
                logger.warning(
                    f"Another client is already connected to server with name: {client_name}"
                )
                return False

            await conn.execute(
                """
                INSERT INTO timetable.active_session (client_pid, client_name, server_pid)
                VALUES ($1, $2, pg_backend_pid())
                """,
                client_pid,
                client_name,
            )
        return True

    async def heartbeat(self, client_pid: int, client_name: str) -> bool:
        """
        Renew this session's lease.

        Returns False when the session row is gone and the name must be
        acquired again.
        """
        result = await self._session_conn().execute(
            """
            UPDATE timetable.active_session SET heartbeat_at = now()
            WHERE client_pid = $1 AND client_name = $2 AND server_pid = pg_backend_pid()
            """,
            client_pid,
            client_name,
        )
        return result != "UPDATE 0"

    async def release(self, client_pid: int, client_name: str) -> None:
        """Drop this session and its active chains on graceful shutdown."""
        conn = self._session_conn()
        async with conn.transaction():
            await conn.execute(
                """
                DELETE FROM timetable.active_session
                WHERE client_pid = $1 AND client_name = $2 AND server_pid = pg_backend_pid()
                """,
                client_pid,
                client_name,
            )
            await conn.execute(
                """
                DELETE FROM timetable.active_chain
                WHERE client_name = $1
                  AND client_name NOT IN (SELECT client_name FROM timetable.active_session)
                """,
                client_name,
            )

    async def list_active_sessions(self) -> List[ActiveSession]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT client_pid, client_name, server_pid, started_at, heartbeat_at
                FROM timetable.active_session
                ORDER BY started_at
                """
            )
        return [ActiveSession(**dict(row)) for row in rows]

    async def add_active_chain(self, chain_id: int, client_name: str) -> None:
        """Mark a chain as running under ``client_name``."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO timetable.active_chain (chain_id, client_name) VALUES ($1, $2)",
                chain_id,
                client_name,
            )

    async def remove_active_chain(self, chain_id: int, client_name: str) -> None:
        """Remove one running marker of a chain under ``client_name``."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                DELETE FROM timetable.active_chain
                WHERE ctid IN (
                    SELECT ctid FROM timetable.active_chain
                    WHERE chain_id = $1 AND client_name = $2
                    LIMIT 1
                )
                """,
                chain_id,
                client_name,
            )

    async def count_active_chains(self, chain_id: Optional[int] = None) -> int:
        """Count running instances of one chain, or of all chains."""
        async with self.db_pool.acquire() as conn:
            if chain_id is None:
                return await conn.fetchval("SELECT count(*) FROM timetable.active_chain")
            return await conn.fetchval(
                "SELECT count(*) FROM timetable.active_chain WHERE chain_id = $1",
                chain_id,
            )

    async def list_active_chains(self, client_name: Optional[str] = None) -> List[ActiveChain]:
        query = "SELECT chain_id, client_name, started_at FROM timetable.active_chain"
        params = []
        if client_name:
            query += " WHERE client_name = $1"
            params.append(client_name)
        query += " ORDER BY started_at"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [ActiveChain(**dict(row)) for row in rows]

    async def is_exclusive_chain_running(self, client_name: str) -> bool:
        """Whether a chain flagged exclusive_execution runs under ``client_name``."""
        async with self.db_pool.acquire() as conn:
            found = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM timetable.active_chain ac
                    JOIN timetable.chain c ON c.chain_id = ac.chain_id
                    WHERE ac.client_name = $1 AND c.exclusive_execution
                )
                """,
                client_name,
            )
        return bool(found)

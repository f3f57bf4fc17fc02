"""CLI entrypoint and programmatic interface for timetable workers."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Optional

import asyncpg

from async_timetable.config import TimetableConfig
from async_timetable.ddl import apply_schema
from async_timetable.registry import BuiltinRegistry, builtin_registry
from async_timetable.scheduler import run_scheduler_loop
from async_timetable.store import TimetableStore


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: TimetableConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(
        config.db_dsn,
        min_size=2,
        max_size=10,
        server_settings=config.server_settings(),
    )


async def create_session_connection(config: TimetableConfig) -> asyncpg.Connection:
    """Open the connection that owns the worker's session and notifications."""
    return await asyncpg.connect(config.db_dsn, server_settings=config.server_settings())


def load_builtins(module_name: Optional[str], logger: logging.Logger) -> None:
    """Import a module registering extra built-ins, if one is configured."""
    if not module_name:
        return
    try:
        importlib.import_module(module_name)
        logger.info(f"Loaded built-ins from {module_name}")
    except ImportError as e:
        logger.warning(f"Failed to import built-ins module {module_name}: {e}")


async def run_worker(
    config: Optional[TimetableConfig] = None,
    db_pool=None,
    registry: Optional[BuiltinRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    init_schema: bool = False,
):
    """
    Run a timetable worker programmatically.

    Args:
        config: TimetableConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: BuiltinRegistry instance. If None, will use global builtin_registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        init_schema: Create the timetable schema before starting.

    Example:
        ```python
        from async_timetable import TimetableConfig, run_worker
        import asyncio

        asyncio.run(run_worker(TimetableConfig.from_env(), init_schema=True))
        ```
    """
    if config is None:
        config = TimetableConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = builtin_registry

    load_builtins(config.builtins_module, logger)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    session_conn = None
    try:
        session_conn = await create_session_connection(config)
        if init_schema:
            logger.info("Applying timetable schema...")
            await apply_schema(session_conn)

        executor = registry.create_executor(
            config.client_name, store=TimetableStore(db_pool), logger=logger
        )
        await run_scheduler_loop(
            config=config,
            db_pool=db_pool,
            session_conn=session_conn,
            executor=executor,
            logger=logger,
            registry=registry,
            shutdown_event=shutdown_event,
        )
    finally:
        if session_conn is not None:
            await session_conn.close()
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Timetable Worker")
    parser.add_argument(
        "--client-name",
        help="Client name to lock (overrides TIMETABLE_CLIENT_NAME)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the timetable schema before starting",
    )

    args = parser.parse_args()

    if args.client_name:
        os.environ["TIMETABLE_CLIENT_NAME"] = args.client_name

    try:
        config = TimetableConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    # Setup shutdown event
    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info(f"Starting worker {config.client_name}...")
            await run_worker(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                init_schema=args.init_schema,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

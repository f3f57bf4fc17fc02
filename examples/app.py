"""Example FastAPI control plane for timetable workers."""

from contextlib import asynccontextmanager

import asyncpg
import uvicorn
from fastapi import FastAPI

from async_timetable import TimetableConfig, TimetableService
from async_timetable.fastapi_router import create_timetable_router

config = TimetableConfig.from_env()
db_pool = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool for the lifetime of the app."""
    global db_pool
    db_pool = await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)
    yield
    await db_pool.close()


app = FastAPI(
    title="Timetable Control Plane",
    description="Manage chains and command timetable workers",
    version="1.0.0",
    lifespan=lifespan,
)


def get_timetable_service() -> TimetableService:
    """Factory function to create the timetable service."""
    if db_pool is None:
        raise RuntimeError("Application not initialized")
    return TimetableService(config, db_pool)


app.include_router(
    create_timetable_router(
        service_factory=get_timetable_service,
        auth_token=config.control_auth_token,
    ),
    prefix="/timetable",
)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "database": "connected" if db_pool else "not connected"}


if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=8000, log_level="info")

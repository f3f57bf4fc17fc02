"""FastAPI router for the timetable control plane."""

import logging
from typing import Any, Callable, List, Optional

import asyncpg
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from async_timetable.errors import (
    ChainNotFoundError,
    CronFormatError,
    CronRangeError,
    LockDeniedError,
    TaskNotFoundError,
)
from async_timetable.models import CommandKind
from async_timetable.service import TimetableService
from async_timetable.store import DEFAULT_TASK_ORDER

logger = logging.getLogger(__name__)


class AddJobRequest(BaseModel):
    """Request model for adding a one-task chain."""

    name: str
    schedule: Optional[str] = None
    command: str
    parameters: Any = None
    kind: CommandKind = CommandKind.SQL
    client_name: Optional[str] = None
    max_instances: Optional[int] = None
    live: bool = True
    self_destruct: bool = False
    ignore_errors: bool = True
    exclusive: bool = False


class AddJobResponse(BaseModel):
    chain_id: int


class ChainResponse(BaseModel):
    """Response model for chain details."""

    chain_id: int
    chain_name: str
    run_at: Optional[str] = None
    max_instances: Optional[int] = None
    timeout: int
    live: bool
    self_destruct: bool
    exclusive_execution: bool
    client_name: Optional[str] = None


class NextRunResponse(BaseModel):
    chain_id: int
    next_run: Optional[str] = None


class ChainCommandRequest(BaseModel):
    """Request model for START/STOP commands."""

    worker_name: str


class ChainCommandResponse(BaseModel):
    chain_id: int
    command: str
    worker_name: str
    ts: int


class AddTaskRequest(BaseModel):
    """Request model for adding a task after an existing one."""

    parent_id: int
    command: str
    kind: CommandKind = CommandKind.SQL
    order_delta: float = DEFAULT_TASK_ORDER


class AddTaskResponse(BaseModel):
    task_id: int


class MoveTaskResponse(BaseModel):
    moved: bool


class DeletedResponse(BaseModel):
    deleted: bool


class SessionResponse(BaseModel):
    """Response model for an active worker session."""

    client_pid: int
    client_name: str
    server_pid: int
    started_at: Optional[str] = None
    heartbeat_at: Optional[str] = None


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map a service error to the HTTP error returned to the caller."""
    if isinstance(e, (ChainNotFoundError, TaskNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (CronFormatError, CronRangeError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, LockDeniedError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, asyncpg.UniqueViolationError):
        return HTTPException(status_code=409, detail="Chain name already exists")
    logger.exception(f"Error {action}")
    return HTTPException(status_code=500, detail="Internal server error")


def create_timetable_router(
    service_factory: Callable[[], TimetableService],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the timetable control plane.

    Args:
        service_factory: Callable that returns a TimetableService instance
        auth_token: Optional auth token required by mutating endpoints

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_service() -> TimetableService:
        """Dependency to get TimetableService instance."""
        return service_factory()

    async def verify_auth_token(
        x_timetable_token: Optional[str] = Header(None, alias="X-Timetable-Token")
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_timetable_token or x_timetable_token != auth_token:
                raise HTTPException(
                    status_code=401, detail="Invalid or missing auth token"
                )

    @router.post("/chains/jobs", response_model=AddJobResponse)
    async def add_job(
        request: AddJobRequest,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Add a one-task chain."""
        try:
            chain_id = await service.add_job(**request.model_dump())
            return AddJobResponse(chain_id=chain_id)
        except Exception as e:
            raise _http_error(e, "adding job") from e

    @router.get("/chains", response_model=List[ChainResponse])
    async def list_chains(
        live_only: bool = Query(False),
        client_name: Optional[str] = Query(None),
        service: TimetableService = Depends(get_service),
    ):
        """List chains, optionally only live ones runnable by a client."""
        try:
            chains = await service.list_chains(live_only=live_only, client_name=client_name)
            return [ChainResponse(**chain.to_dict()) for chain in chains]
        except Exception as e:
            raise _http_error(e, "listing chains") from e

    @router.get("/chains/{chain_id}", response_model=ChainResponse)
    async def get_chain(
        chain_id: int,
        service: TimetableService = Depends(get_service),
    ):
        """Get chain details by ID."""
        try:
            chain = await service.get_chain(chain_id)
            return ChainResponse(**chain.to_dict())
        except Exception as e:
            raise _http_error(e, "getting chain") from e

    @router.delete("/chains/by-name/{name}", response_model=DeletedResponse)
    async def delete_job(
        name: str,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Delete a chain and its tasks by name."""
        try:
            if not await service.delete_job(name):
                raise ChainNotFoundError(name)
            return DeletedResponse(deleted=True)
        except Exception as e:
            raise _http_error(e, "deleting job") from e

    @router.get("/chains/{chain_id}/next-run", response_model=NextRunResponse)
    async def next_run(
        chain_id: int,
        service: TimetableService = Depends(get_service),
    ):
        """Get the next scheduled run of a cron chain."""
        try:
            when = await service.next_run(chain_id)
            return NextRunResponse(
                chain_id=chain_id, next_run=when.isoformat() if when else None
            )
        except Exception as e:
            raise _http_error(e, "computing next run") from e

    @router.post("/chains/{chain_id}/start", response_model=ChainCommandResponse)
    async def start_chain(
        chain_id: int,
        request: ChainCommandRequest,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Ask a worker to start a chain now."""
        try:
            notification = await service.notify_chain_start(chain_id, request.worker_name)
        except Exception as e:
            raise _http_error(e, "starting chain") from e
        return ChainCommandResponse(
            chain_id=notification.chain_id,
            command=notification.command.value,
            worker_name=request.worker_name,
            ts=notification.ts,
        )

    @router.post("/chains/{chain_id}/stop", response_model=ChainCommandResponse)
    async def stop_chain(
        chain_id: int,
        request: ChainCommandRequest,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Ask a worker to stop a running chain."""
        try:
            notification = await service.notify_chain_stop(chain_id, request.worker_name)
        except Exception as e:
            raise _http_error(e, "stopping chain") from e
        return ChainCommandResponse(
            chain_id=notification.chain_id,
            command=notification.command.value,
            worker_name=request.worker_name,
            ts=notification.ts,
        )

    @router.post("/tasks", response_model=AddTaskResponse)
    async def add_task(
        request: AddTaskRequest,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Add a task to the chain of an existing task."""
        try:
            task_id = await service.add_task(
                request.kind, request.command, request.parent_id, request.order_delta
            )
            return AddTaskResponse(task_id=task_id)
        except Exception as e:
            raise _http_error(e, "adding task") from e

    @router.post("/tasks/{task_id}/move-up", response_model=MoveTaskResponse)
    async def move_task_up(
        task_id: int,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        try:
            return MoveTaskResponse(moved=await service.move_task_up(task_id))
        except Exception as e:
            raise _http_error(e, "moving task") from e

    @router.post("/tasks/{task_id}/move-down", response_model=MoveTaskResponse)
    async def move_task_down(
        task_id: int,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        try:
            return MoveTaskResponse(moved=await service.move_task_down(task_id))
        except Exception as e:
            raise _http_error(e, "moving task") from e

    @router.delete("/tasks/{task_id}", response_model=DeletedResponse)
    async def delete_task(
        task_id: int,
        service: TimetableService = Depends(get_service),
        _: None = Depends(verify_auth_token),
    ):
        """Delete a task."""
        try:
            if not await service.delete_task(task_id):
                raise TaskNotFoundError(task_id)
            return DeletedResponse(deleted=True)
        except Exception as e:
            raise _http_error(e, "deleting task") from e

    @router.get("/sessions", response_model=List[SessionResponse])
    async def list_sessions(
        service: TimetableService = Depends(get_service),
    ):
        """List workers holding a client name."""
        try:
            sessions = await service.list_active_sessions()
            return [SessionResponse(**s.to_dict()) for s in sessions]
        except Exception as e:
            raise _http_error(e, "listing sessions") from e

    return router

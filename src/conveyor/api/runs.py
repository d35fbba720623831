"""Run API endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from conveyor.core.auth import verify_api_key
from conveyor.core.errors import CycleError, LoadError, NotFoundError, RunActiveError
from conveyor.api.deps import get_manager, get_store
from conveyor.daemon.manager import RunManager
from conveyor.pipeline.types import RunStatus
from conveyor.repositories.run_repo import RunFilter, RunStateStore
from conveyor.schemas.run import (
    CancelResponse,
    RunCreate,
    RunListResponse,
    RunResponse,
    RunSummaryResponse,
    TransitionListResponse,
    TransitionResponse,
)

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("", response_model=RunResponse, status_code=202)
async def trigger_run(
    data: RunCreate,
    manager: RunManager = Depends(get_manager),
    _: str = Depends(verify_api_key),
):
    """Trigger a run. It is driven in the background; poll GET /runs/{id}."""
    try:
        run = await manager.start(data)
    except (LoadError, CycleError) as e:
        raise HTTPException(400, str(e))
    return RunResponse.from_run(run)


@router.get("", response_model=RunListResponse)
async def list_runs(
    status: RunStatus | None = None,
    definition: str | None = None,
    limit: int = 20,
    store: RunStateStore = Depends(get_store),
    _: str = Depends(verify_api_key),
):
    """List recent runs, newest first."""
    summaries = await store.list(RunFilter(status=status, definition_name=definition, limit=limit))
    runs = [RunSummaryResponse.model_validate(s) for s in summaries]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    store: RunStateStore = Depends(get_store),
    _: str = Depends(verify_api_key),
):
    try:
        run = await store.get(run_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    return RunResponse.from_run(run)


@router.get("/{run_id}/transitions", response_model=TransitionListResponse)
async def get_transitions(
    run_id: str,
    store: RunStateStore = Depends(get_store),
    _: str = Depends(verify_api_key),
):
    """The persisted stage transition log, in commit order."""
    try:
        transitions = await store.transitions(run_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    return TransitionListResponse(
        run_id=run_id,
        transitions=[TransitionResponse.model_validate(t) for t in transitions],
    )


@router.post("/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(
    run_id: str,
    manager: RunManager = Depends(get_manager),
    _: str = Depends(verify_api_key),
):
    try:
        cancelled = await manager.cancel(run_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    return CancelResponse(run_id=run_id, cancelled=cancelled)


@router.post("/{run_id}/resume", response_model=RunResponse)
async def resume_run(
    run_id: str,
    manager: RunManager = Depends(get_manager),
    _: str = Depends(verify_api_key),
):
    """Resume an unfinished run. A finished run is returned unchanged."""
    try:
        run = await manager.resume(run_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except RunActiveError as e:
        raise HTTPException(409, str(e))
    except (LoadError, CycleError) as e:
        raise HTTPException(400, str(e))
    return RunResponse.from_run(run)

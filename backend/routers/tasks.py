"""
Tasks router: list scheduled tasks, run or cancel them, and read history.
"""
import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query

from task_engine import get_engine
from task_registry import get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])

# Keeps manually triggered runs referenced until they finish
_background_runs: set[asyncio.Task] = set()


def _require_task(task_id: str) -> None:
    if not get_registry().is_registered(task_id):
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")


@router.get("")
async def list_tasks():
    """List every registered task with its status and schedule."""
    return {"tasks": get_registry().get_all_task_statuses()}


@router.get("/engine/status")
async def get_engine_status():
    return get_engine().get_status()


@router.get("/{task_id}")
async def get_task(task_id: str):
    _require_task(task_id)
    return get_registry().get_task_status(task_id)


@router.post("/{task_id}/run")
async def run_task(task_id: str, wait: bool = False):
    """
    Trigger a task now.

    By default the run happens in the background and the response returns
    immediately; wait=true blocks until the run finishes and returns its result.
    """
    _require_task(task_id)
    engine = get_engine()

    if task_id in engine.active_task_ids:
        raise HTTPException(status_code=409, detail=f"Task {task_id} is already running")

    if wait:
        result = await engine.run_task(task_id)
        return result.to_dict()

    logger.info(f"[TASKS] Manual run requested for {task_id}")
    run = asyncio.create_task(engine.run_task(task_id))
    _background_runs.add(run)
    run.add_done_callback(_background_runs.discard)
    return {"status": "started", "task_id": task_id}


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str):
    _require_task(task_id)
    return await get_engine().cancel_task(task_id)


@router.get("/{task_id}/history")
async def get_task_history(
    task_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Execution records for a task, newest first."""
    _require_task(task_id)
    return {"history": get_engine().get_task_history(task_id=task_id, limit=limit, offset=offset)}

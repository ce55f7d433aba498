"""
Task Engine.

Drives the registered tasks in the background: one pass of the startup
tasks shortly after start, then a check every `check_interval` seconds for
tasks whose interval has elapsed. Every run, however it was triggered, gets
a TaskExecution row holding its result and the JSON run report.
"""
import asyncio
import json
import logging
from contextlib import contextmanager, suppress
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_session
from models import TaskExecution
from task_registry import get_registry
from task_scheduler import ALREADY_RUNNING, CANCELLED, TaskResult

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 60
DEFAULT_STARTUP_DELAY = 5
# Seconds stop() waits for cancelled runs to reach a checkpoint
STOP_TIMEOUT = 30

# TaskResult fields copied onto the TaskExecution row as-is
_RESULT_COLUMNS = (
    "success", "message", "error", "total_items", "success_count", "failed_count", "skipped_count",
)


@contextmanager
def _execution_log() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


class TaskEngine:
    def __init__(self, check_interval: int = DEFAULT_CHECK_INTERVAL,
                 startup_delay: float = DEFAULT_STARTUP_DELAY):
        self.check_interval = check_interval
        self.startup_delay = startup_delay
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._active_tasks: set[str] = set()
        # Scheduled runs, referenced until they finish
        self._background: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_task_ids(self) -> list[str]:
        return sorted(self._active_tasks)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("[ENGINE] Already running")
            return
        self._running = True
        get_registry().initialize()
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"[ENGINE] Started, checking every {self.check_interval}s")

    async def stop(self) -> None:
        """Stop scheduling, cancel running tasks and wait for them to wind down."""
        if not self._running:
            return
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        registry = get_registry()
        for task_id in list(self._active_tasks):
            registry.get_task_instance(task_id).cancel()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STOP_TIMEOUT
        while self._active_tasks and loop.time() < deadline:
            await asyncio.sleep(0.5)
        if self._active_tasks:
            logger.warning(f"[ENGINE] Gave up waiting for {self.active_task_ids}")

        for run in list(self._background):
            run.cancel()
        logger.info("[ENGINE] Stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.startup_delay)
        for instance in get_registry().instances():
            if instance.should_run_on_startup():
                self._spawn(instance.task_id, "startup")

        while self._running:
            await asyncio.sleep(self.check_interval)
            try:
                self.start_due_tasks()
            except Exception as e:
                logger.exception(f"[ENGINE] Due-task check failed: {e}")

    def _spawn(self, task_id: str, triggered_by: str) -> None:
        run = asyncio.create_task(self._execute(task_id, triggered_by))
        self._background.add(run)
        run.add_done_callback(self._background.discard)

    def start_due_tasks(self, now: Optional[datetime] = None) -> list[str]:
        """Start every idle task whose next run time has passed. Returns their IDs."""
        now = now or datetime.utcnow()
        started = []
        for instance in get_registry().instances():
            if instance.task_id not in self._active_tasks and instance.is_due(now):
                logger.info(f"[ENGINE] {instance.task_id} is due")
                self._spawn(instance.task_id, "scheduled")
                started.append(instance.task_id)
        return started

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def _execute(self, task_id: str, triggered_by: str) -> Optional[TaskResult]:
        instance = get_registry().get_task_instance(task_id)
        if instance is None:
            logger.error(f"[ENGINE] Unknown task {task_id}")
            return None

        # No await between the check and the add, so two triggers cannot both pass
        if task_id in self._active_tasks or instance.is_running:
            logger.warning(f"[ENGINE] {task_id} is already running, not starting it again")
            return TaskResult(success=False, message="Task is already running", error=ALREADY_RUNNING)
        self._active_tasks.add(task_id)

        try:
            execution_id = self._record_start(task_id, triggered_by)
            logger.info(f"[ENGINE] Running {task_id} ({triggered_by})")
            result = await instance.run()
            if execution_id is not None:
                self._record_finish(execution_id, result)
            return result
        finally:
            self._active_tasks.discard(task_id)

    async def run_task(self, task_id: str) -> Optional[TaskResult]:
        """Run a task now, as a manual trigger, and wait for the result."""
        return await self._execute(task_id, "manual")

    async def cancel_task(self, task_id: str) -> dict:
        instance = get_registry().get_task_instance(task_id)
        if instance is None:
            return {"status": "not_found", "message": f"Task {task_id} not found"}
        if task_id not in self._active_tasks:
            return {"status": "not_running", "message": f"Task {task_id} is not running"}
        return instance.cancel()

    # -------------------------------------------------------------------------
    # Execution records
    # -------------------------------------------------------------------------

    def _record_start(self, task_id: str, triggered_by: str) -> Optional[int]:
        try:
            with _execution_log() as session:
                execution = TaskExecution(task_id=task_id, started_at=datetime.utcnow(),
                                          status="running", triggered_by=triggered_by)
                session.add(execution)
                session.flush()
                return execution.id
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Could not record start of {task_id}: {e}")
            return None

    def _record_finish(self, execution_id: int, result: TaskResult) -> None:
        if result.error == CANCELLED:
            status = "cancelled"
        else:
            status = "completed" if result.success else "failed"
        try:
            with _execution_log() as session:
                execution = session.get(TaskExecution, execution_id)
                if execution is None:
                    return
                execution.status = status
                execution.completed_at = result.completed_at or datetime.utcnow()
                execution.duration_seconds = result.duration_seconds
                for column in _RESULT_COLUMNS:
                    setattr(execution, column, getattr(result, column))
                execution.details = json.dumps(result.details) if result.details else None
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Could not record result of execution {execution_id}: {e}")

    def get_task_history(self, task_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[dict]:
        """Execution records, newest first."""
        try:
            with _execution_log() as session:
                query = session.query(TaskExecution)
                if task_id:
                    query = query.filter(TaskExecution.task_id == task_id)
                query = query.order_by(TaskExecution.started_at.desc(), TaskExecution.id.desc())
                return [e.to_dict() for e in query.offset(offset).limit(limit)]
        except SQLAlchemyError as e:
            logger.error(f"[ENGINE] Could not read task history: {e}")
            return []

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "check_interval": self.check_interval,
            "active_tasks": self.active_task_ids,
            "registered_task_count": len(get_registry().list_task_ids()),
        }


_engine: Optional[TaskEngine] = None


def get_engine() -> TaskEngine:
    global _engine
    if _engine is None:
        _engine = TaskEngine()
    return _engine


async def start_engine() -> None:
    await get_engine().start()


async def stop_engine() -> None:
    await get_engine().stop()

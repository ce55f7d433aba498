"""
Scheduled task base class.

A task runs every `interval_seconds` (or only when triggered, if that is
None), never overlaps with itself, publishes progress while it runs, stops
at its next checkpoint when cancelled, and keeps its recent results in
memory. Execution records in the database are written by the TaskEngine.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Error codes carried by TaskResult.error
ALREADY_RUNNING = "ALREADY_RUNNING"
CONFIG_INVALID = "CONFIG_INVALID"
CANCELLED = "CANCELLED"

# Results kept in memory per task
MAX_HISTORY = 50


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class TaskProgress:
    """Live counters for the current run, as shown by the tasks API."""
    total: int = 0
    current: int = 0
    status: str = "idle"
    current_item: str = ""
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    started_at: Optional[datetime] = None

    def update(self, **values) -> None:
        """Set the given fields; None values are ignored."""
        for name, value in values.items():
            if value is not None:
                setattr(self, name, value)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        data["percentage"] = round(100.0 * self.current / self.total, 1) if self.total else 0.0
        return data


@dataclass
class TaskResult:
    """Outcome of one run. `details` holds the task's own report."""
    success: bool
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(
            started_at=_iso(self.started_at),
            completed_at=_iso(self.completed_at),
            duration_seconds=self.duration_seconds,
        )
        return data


class TaskScheduler(ABC):
    """
    Base for tasks driven by the TaskEngine.

    Subclasses set task_id / task_name and implement execute(), checking
    `cancel_requested` between units of work. validate_config() can veto
    a run before it starts.
    """

    task_id: str = ""
    task_name: str = ""
    task_description: str = ""

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds
        self.status = TaskStatus.IDLE
        self.progress = TaskProgress()
        self.cancel_requested = False
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.history: list[TaskResult] = []

    @abstractmethod
    async def execute(self) -> TaskResult:
        """Do one run of the task."""

    async def validate_config(self) -> tuple[bool, str]:
        """Return (ok, reason). A failed check skips the run."""
        return True, ""

    def get_config(self) -> dict:
        return {}

    def should_run_on_startup(self) -> bool:
        return False

    @property
    def is_running(self) -> bool:
        return self.status == TaskStatus.RUNNING

    def _set_progress(self, **values) -> None:
        self.progress.update(**values)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def run(self) -> TaskResult:
        """
        Run the task now and return its result.

        A second call while a run is in progress returns ALREADY_RUNNING
        without doing anything. Errors raised by execute() become a failed
        result; the next interval run is scheduled either way.
        """
        if self.is_running:
            return TaskResult(success=False, message="Task is already running", error=ALREADY_RUNNING)

        ok, reason = await self.validate_config()
        if not ok:
            return TaskResult(success=False, message=f"Configuration validation failed: {reason}",
                              error=CONFIG_INVALID)

        started_at = datetime.utcnow()
        self.status = TaskStatus.RUNNING
        self.cancel_requested = False
        self.progress = TaskProgress(status="starting", started_at=started_at)
        logger.info(f"[{self.task_id}] Starting {self.task_name}")

        result = TaskResult(success=False, message="Task was interrupted")
        try:
            result = await self.execute()
        except Exception as e:
            logger.exception(f"[{self.task_id}] Run raised: {e}")
            result = TaskResult(success=False, message=f"Task failed with error: {e}", error=str(e))
        finally:
            if self.cancel_requested:
                result.success = False
                result.message = "Task was cancelled"
                result.error = CANCELLED
            result.started_at = started_at
            result.completed_at = datetime.utcnow()
            self._finish(result)

        return result

    def _finish(self, result: TaskResult) -> None:
        self.status = TaskStatus.IDLE
        self.last_run = result.completed_at
        self.progress.status = "completed" if result.success else "failed"
        self.history = [result] + self.history[:MAX_HISTORY - 1]
        self.schedule_next_run()

        if result.success:
            logger.info(f"[{self.task_id}] Finished: {result.message}")
        else:
            logger.warning(f"[{self.task_id}] Did not succeed ({result.error}): {result.message}")

    def cancel(self) -> dict:
        """Ask a running task to stop at its next checkpoint."""
        if not self.is_running:
            return {"status": "not_running", "message": "Task is not currently running"}

        logger.info(f"[{self.task_id}] Cancellation requested")
        self.cancel_requested = True
        self.progress.status = "cancelling"
        return {"status": "cancelling", "message": "Cancellation requested"}

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------

    def schedule_next_run(self, now: Optional[datetime] = None) -> None:
        """Set next_run one interval from now; manual-only tasks get None."""
        if self.interval_seconds:
            self.next_run = (now or datetime.utcnow()) + timedelta(seconds=self.interval_seconds)
        else:
            self.next_run = None

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return self.next_run is not None and self.next_run <= (now or datetime.utcnow())

    def get_status_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "task_description": self.task_description,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "schedule": {"interval_seconds": self.interval_seconds},
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
            "config": self.get_config(),
            "recent_results": [r.to_dict() for r in self.history[:5]],
        }

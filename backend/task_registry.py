"""
Task registry.

Maps task_id to its TaskScheduler class and holds the one live instance of
each. The scheduler loop, the tasks API and the worker all go through the
same instance, so a task's overlap guard covers every trigger.
"""
import logging
from typing import Optional, Type

from task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class TaskRegistry:
    def __init__(self):
        self._classes: dict[str, Type[TaskScheduler]] = {}
        self._instances: dict[str, TaskScheduler] = {}

    def register(self, task_class: Type[TaskScheduler]) -> None:
        if not task_class.task_id:
            raise ValueError(f"{task_class.__name__} has no task_id")
        self._classes[task_class.task_id] = task_class
        self._instances.pop(task_class.task_id, None)
        logger.debug(f"[TASKS] Registered {task_class.task_id}")

    def is_registered(self, task_id: str) -> bool:
        return task_id in self._classes

    def list_task_ids(self) -> list[str]:
        return list(self._classes)

    def get_task_instance(self, task_id: str) -> Optional[TaskScheduler]:
        """The live instance for task_id, created on first use."""
        task_class = self._classes.get(task_id)
        if task_class is None:
            return None
        if task_id not in self._instances:
            self._instances[task_id] = task_class()
        return self._instances[task_id]

    def instances(self) -> list[TaskScheduler]:
        return [self.get_task_instance(task_id) for task_id in self._classes]

    def initialize(self) -> None:
        """Create every task and schedule its first interval run."""
        for instance in self.instances():
            instance.schedule_next_run()
        logger.info(f"[TASKS] {len(self._classes)} tasks ready")

    def reset(self) -> None:
        """Forget live instances; the next lookup builds fresh ones."""
        self._instances.clear()

    def get_task_status(self, task_id: str) -> Optional[dict]:
        instance = self.get_task_instance(task_id)
        return instance.get_status_dict() if instance else None

    def get_all_task_statuses(self) -> list[dict]:
        return [instance.get_status_dict() for instance in self.instances()]


_registry: Optional[TaskRegistry] = None


def get_registry() -> TaskRegistry:
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry


def register_task(task_class: Type[TaskScheduler]) -> Type[TaskScheduler]:
    """Class decorator adding a task to the global registry."""
    get_registry().register(task_class)
    return task_class

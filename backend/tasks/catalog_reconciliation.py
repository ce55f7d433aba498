"""
Catalog Reconciliation Task.

Scheduled task that pulls the tracked channels from the feed provider and
reconciles them into the anime catalog. Runs every
reconciliation_interval_hours and, by default, once at startup.
"""
import logging
from datetime import datetime

from catalog_store import SqlCatalogStore
from config import get_settings
from feed_client import FeedClient
from reconciliation_engine import ReconciliationEngine
from task_scheduler import TaskScheduler, TaskResult
from task_registry import register_task

logger = logging.getLogger(__name__)


@register_task
class CatalogReconciliationTask(TaskScheduler):
    """
    Task to reconcile the catalog against the feed provider.

    Settings used (from settings.json / environment):
    - sources: channels to ingest
    - fetch_statistics: whether to look up per-video view counts
    - group_delay_seconds: pause between playlists
    - reconciliation_interval_hours / run_on_startup: scheduling
    """

    task_id = "catalog_reconciliation"
    task_name = "Catalog Reconciliation"
    task_description = "Fetch tracked channels and update the anime catalog"

    def __init__(self):
        super().__init__(interval_seconds=get_settings().reconciliation_interval_hours * 3600)
        # Swappable in tests
        self.client_factory = FeedClient.from_settings
        self.store_factory = SqlCatalogStore

    def get_config(self) -> dict:
        settings = get_settings()
        return {
            "sources": [s.model_dump() for s in settings.sources],
            "fetch_statistics": settings.fetch_statistics,
            "group_delay_seconds": settings.group_delay_seconds,
            "run_on_startup": settings.run_on_startup,
        }

    def should_run_on_startup(self) -> bool:
        return get_settings().run_on_startup

    async def validate_config(self) -> tuple[bool, str]:
        settings = get_settings()
        if not settings.feed_api_key:
            return False, "No feed API key configured (set YOUTUBE_API_KEY)"
        if not settings.sources:
            return False, "No sources configured"
        return True, ""

    def _on_progress(self, message: str, sources_done: int) -> None:
        self._set_progress(current=sources_done, current_item=message)

    async def execute(self) -> TaskResult:
        """Run one reconciliation pass."""
        settings = get_settings()
        started_at = datetime.utcnow()

        self._set_progress(
            total=len(settings.sources),
            current=0,
            status="reconciling",
            current_item="Starting",
        )

        async with self.client_factory(settings) as client:
            engine = ReconciliationEngine(
                client=client,
                store=self.store_factory(),
                sources=settings.sources,
                group_delay_seconds=settings.group_delay_seconds,
                fetch_statistics=settings.fetch_statistics,
                should_cancel=lambda: self.cancel_requested,
                on_progress=self._on_progress,
            )
            report = await engine.run()

        self._set_progress(
            current=report.sources_processed + report.sources_failed,
            success_count=report.items_processed,
            failed_count=report.failed_count,
            skipped_count=report.groups_skipped,
            status="completed",
        )

        all_sources_failed = bool(settings.sources) and report.sources_failed == len(settings.sources)
        message = f"Reconciled {report.summary()}"
        logger.info(f"[{self.task_id}] {message}")

        return TaskResult(
            success=not all_sources_failed,
            message=message if not all_sources_failed else f"Every source failed: {message}",
            started_at=started_at,
            completed_at=datetime.utcnow(),
            total_items=report.items_processed + report.items_failed,
            success_count=report.items_processed,
            failed_count=report.failed_count,
            skipped_count=report.groups_skipped,
            error="ALL_SOURCES_FAILED" if all_sources_failed else None,
            details=report.to_dict(),
        )

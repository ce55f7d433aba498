"""
Reconciliation Engine

Walks every tracked source (channel -> playlists -> videos), keeps the
playlists that look like episode releases, resolves each one to a catalog
entry by canonical title, and writes groupings and episodes through the
CatalogStore.

View totals are aggregated per catalog entry across every grouping seen
in the run and written once at the end, so an entry with both a subbed
and a dubbed playlist gets one total and one weekly delta per run.

Failures stay local: a failed source skips that source, a failed group
skips that group, a failed episode write skips that episode. Nothing here
raises out of run(); the outcome is summarized in the RunReport.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

from catalog_store import CatalogStore, PersistenceFailure
from config import SourceConfig
from feed_client import FeedClient, FeedGroup, FeedItem, FeedUnavailable
from title_heuristics import (
    extract_canonical_title,
    extract_episode_number,
    extract_language,
    is_relevant,
)

logger = logging.getLogger(__name__)

SOURCE_URL_TEMPLATE = "https://www.youtube.com/channel/{source_id}"
DEFAULT_GROUP_DELAY_SECONDS = 2.0
# Error messages kept in the run report
MAX_REPORTED_ERRORS = 50


class ValidationSkip(Exception):
    """A candidate value failed validation and is ignored for this run."""
    pass


def validate_thumbnail_url(url: Optional[str]) -> str:
    """Return the URL if it is an absolute http(s) URL, else raise ValidationSkip."""
    if not url or not url.strip():
        raise ValidationSkip("empty thumbnail URL")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationSkip(f"invalid thumbnail URL: {url}")
    return url


def source_url(source_id: str) -> str:
    """Public page URL for a channel."""
    return SOURCE_URL_TEMPLATE.format(source_id=source_id)


class IdentityResolver(ABC):
    """Maps a canonical title to an existing catalog entry."""

    @abstractmethod
    def resolve(self, store: CatalogStore, canonical_title: str) -> Optional[int]:
        """Return the matching entry ID, or None when the title is new."""


class ExactTitleResolver(IdentityResolver):
    """Exact string match on the stored canonical title."""

    def resolve(self, store: CatalogStore, canonical_title: str) -> Optional[int]:
        return store.find_catalog_entry_by_title(canonical_title)


@dataclass
class EntryAggregate:
    """Per-run running totals for one catalog entry."""
    entry_id: int
    title: str
    sum_views: int = 0
    items_seen: int = 0
    latest_published_at: Optional[datetime] = None
    earliest_published_at: Optional[datetime] = None
    thumbnail_candidate: Optional[str] = None
    # Set when any grouping of this entry could not be read completely
    incomplete: bool = False
    seen_item_ids: set = field(default_factory=set)

    def add_item(self, item: FeedItem, view_count: int) -> None:
        # The same video can sit in two playlists of one entry
        if item.item_id in self.seen_item_ids:
            return
        self.seen_item_ids.add(item.item_id)
        self.sum_views += view_count

        first_item = self.items_seen == 0
        self.items_seen += 1

        if item.published_at is not None:
            if self.latest_published_at is None or item.published_at > self.latest_published_at:
                self.latest_published_at = item.published_at
            if self.earliest_published_at is None or item.published_at < self.earliest_published_at:
                self.earliest_published_at = item.published_at
                self.thumbnail_candidate = item.thumbnail_url
        elif first_item:
            self.thumbnail_candidate = item.thumbnail_url


@dataclass
class RunReport:
    """Summary of one reconciliation run."""
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    sources_processed: int = 0
    sources_failed: int = 0
    groups_processed: int = 0
    groups_skipped: int = 0
    groups_failed: int = 0
    items_processed: int = 0
    items_failed: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    entries_failed: int = 0
    entries_stats_skipped: int = 0
    thumbnails_set: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return self.sources_failed + self.groups_failed + self.items_failed + self.entries_failed

    @property
    def success(self) -> bool:
        return self.failed_count == 0 and not self.cancelled

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def summary(self) -> str:
        return (
            f"{self.sources_processed} sources, {self.groups_processed} groups, "
            f"{self.items_processed} items, {self.entries_created} new entries, "
            f"{self.failed_count} failures"
        )

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "sources_processed": self.sources_processed,
            "sources_failed": self.sources_failed,
            "groups_processed": self.groups_processed,
            "groups_skipped": self.groups_skipped,
            "groups_failed": self.groups_failed,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "entries_created": self.entries_created,
            "entries_updated": self.entries_updated,
            "entries_failed": self.entries_failed,
            "entries_stats_skipped": self.entries_stats_skipped,
            "thumbnails_set": self.thumbnails_set,
            "cancelled": self.cancelled,
            "errors": self.errors,
        }


class ReconciliationEngine:
    """Runs one reconciliation pass over the configured sources."""

    def __init__(
        self,
        client: FeedClient,
        store: CatalogStore,
        sources: list[SourceConfig],
        group_delay_seconds: float = DEFAULT_GROUP_DELAY_SECONDS,
        fetch_statistics: bool = True,
        identity_resolver: Optional[IdentityResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[str, int], None]] = None,
    ):
        self.client = client
        self.store = store
        self.sources = list(sources)
        self.group_delay_seconds = group_delay_seconds
        self.fetch_statistics = fetch_statistics
        self.identity_resolver = identity_resolver or ExactTitleResolver()
        self._sleep = sleep
        self._should_cancel = should_cancel
        self._on_progress = on_progress

    def _cancelled(self) -> bool:
        return bool(self._should_cancel and self._should_cancel())

    def _progress(self, message: str, report: RunReport) -> None:
        """Report the current step and how many sources are finished."""
        if self._on_progress:
            self._on_progress(message, report.sources_processed + report.sources_failed)

    async def run(self) -> RunReport:
        """Reconcile every source, then finalize the per-entry aggregates."""
        report = RunReport()
        aggregates: dict[int, EntryAggregate] = {}

        logger.info(f"[RECONCILE] Starting run over {len(self.sources)} sources")

        for source in self.sources:
            if self._cancelled():
                report.cancelled = True
                break
            await self._process_source(source, aggregates, report)
            self._progress(f"Finished source {source.display_name}", report)

        if report.cancelled:
            logger.info("[RECONCILE] Run cancelled, finalizing entries seen so far")

        for aggregate in aggregates.values():
            self._finalize_entry(aggregate, report)

        report.completed_at = datetime.utcnow()
        logger.info(f"[RECONCILE] Run finished: {report.summary()}")
        return report

    def resolve_identity(self, canonical_title: str, synopsis: Optional[str] = None) -> tuple[int, bool]:
        """
        Find the catalog entry for a canonical title, creating it if needed.

        Returns (entry_id, created). A new entry takes the given synopsis.
        """
        entry_id = self.identity_resolver.resolve(self.store, canonical_title)
        if entry_id is not None:
            return entry_id, False
        entry_id = self.store.upsert_catalog_entry(canonical_title, synopsis=synopsis or None)
        logger.info(f"[RECONCILE] Created catalog entry '{canonical_title}' (id={entry_id})")
        return entry_id, True

    async def _process_source(self, source: SourceConfig, aggregates: dict[int, EntryAggregate],
                              report: RunReport) -> None:
        logger.info(f"[RECONCILE] Processing source {source.display_name} ({source.source_id})")
        self._progress(f"Source {source.display_name}", report)

        avatar_url = None
        try:
            avatar_url = await self.client.get_source_avatar(source.source_id)
        except FeedUnavailable as e:
            logger.warning(f"[RECONCILE] Could not fetch avatar for {source.display_name}: {e}")

        try:
            self.store.upsert_source(source.source_id, source.display_name, source_url(source.source_id), avatar_url)
        except PersistenceFailure as e:
            report.sources_failed += 1
            report.add_error(f"source {source.source_id}: {e}")
            logger.error(f"[RECONCILE] Could not save source {source.display_name}, skipping it: {e}")
            return

        try:
            groups = await self.client.get_groups_for_source(source.source_id)
        except FeedUnavailable as e:
            report.sources_failed += 1
            report.add_error(f"source {source.source_id}: {e}")
            logger.error(f"[RECONCILE] Could not fetch playlists for {source.display_name}, skipping it: {e}")
            return

        logger.info(f"[RECONCILE] {source.display_name}: {len(groups)} playlists")

        processed_any = False
        for group in groups:
            if self._cancelled():
                report.cancelled = True
                return

            if not is_relevant(group.title):
                report.groups_skipped += 1
                logger.debug(f"[RECONCILE] Skipping irrelevant playlist: {group.title}")
                continue

            if processed_any and self.group_delay_seconds > 0:
                await self._sleep(self.group_delay_seconds)
            processed_any = True

            await self._process_group(source, group, aggregates, report)

        report.sources_processed += 1

    async def _process_group(self, source: SourceConfig, group: FeedGroup,
                             aggregates: dict[int, EntryAggregate], report: RunReport) -> None:
        canonical_title = extract_canonical_title(group.title)
        if not canonical_title:
            report.groups_skipped += 1
            logger.warning(f"[RECONCILE] Playlist title has no usable name, skipping: {group.title}")
            return

        language = extract_language(group.title)
        self._progress(f"Playlist {group.title}", report)

        try:
            entry_id, created = self.resolve_identity(canonical_title, group.description)
            self.store.upsert_grouping(
                group.group_id, source.source_id, entry_id, group.title, group.description or None, language,
            )
        except PersistenceFailure as e:
            report.groups_failed += 1
            report.add_error(f"group {group.group_id}: {e}")
            logger.error(f"[RECONCILE] Could not save playlist {group.title}: {e}")
            return

        if created:
            report.entries_created += 1

        aggregate = aggregates.get(entry_id)
        if aggregate is None:
            aggregate = aggregates[entry_id] = EntryAggregate(entry_id=entry_id, title=canonical_title)

        try:
            items = await self.client.get_items_for_group(group.group_id)
            view_counts: dict[str, int] = {}
            if self.fetch_statistics and items:
                view_counts = await self.client.get_item_statistics([item.item_id for item in items])
        except FeedUnavailable as e:
            aggregate.incomplete = True
            report.groups_failed += 1
            report.add_error(f"group {group.group_id}: {e}")
            logger.error(f"[RECONCILE] Could not fetch videos for {group.title}: {e}")
            return

        for item in items:
            view_count = view_counts.get(item.item_id, 0)
            aggregate.add_item(item, view_count)
            try:
                self.store.upsert_episode(
                    item.item_id,
                    group.group_id,
                    item.title,
                    extract_episode_number(item.title),
                    item.published_at,
                    item.thumbnail_url,
                    view_count,
                )
            except PersistenceFailure as e:
                report.items_failed += 1
                report.add_error(f"item {item.item_id}: {e}")
                logger.error(f"[RECONCILE] Could not save episode {item.item_id}: {e}")
                continue
            report.items_processed += 1

        report.groups_processed += 1
        logger.debug(f"[RECONCILE] Playlist {group.title} -> '{canonical_title}' [{language}], {len(items)} videos")

    def _finalize_entry(self, aggregate: EntryAggregate, report: RunReport) -> None:
        """
        Write the run's last-updated time, thumbnail and view totals for one entry.

        Each write stands alone: a failure is counted and logged, and the
        remaining writes still run.
        """
        failed = False

        if aggregate.latest_published_at is not None:
            try:
                self.store.update_catalog_entry_last_updated(aggregate.entry_id, aggregate.latest_published_at)
            except PersistenceFailure as e:
                failed = True
                self._entry_write_failed(aggregate, "last-updated time", e, report)

        if aggregate.items_seen:
            try:
                url = validate_thumbnail_url(aggregate.thumbnail_candidate)
                if self.store.update_catalog_entry_thumbnail_if_absent(aggregate.entry_id, url):
                    report.thumbnails_set += 1
            except ValidationSkip as e:
                logger.debug(f"[RECONCILE] Thumbnail skipped for '{aggregate.title}': {e}")
            except PersistenceFailure as e:
                failed = True
                self._entry_write_failed(aggregate, "thumbnail", e, report)

        if aggregate.incomplete or report.cancelled:
            report.entries_stats_skipped += 1
            logger.warning(f"[RECONCILE] Keeping previous view stats for '{aggregate.title}' (incomplete data this run)")
        else:
            try:
                previous_total = self.store.get_catalog_entry_total_views(aggregate.entry_id)
                delta = aggregate.sum_views - previous_total
                self.store.update_catalog_entry_view_stats(aggregate.entry_id, aggregate.sum_views, delta)
                logger.debug(f"[RECONCILE] '{aggregate.title}': views {previous_total} -> {aggregate.sum_views} ({delta:+d})")
            except PersistenceFailure as e:
                failed = True
                self._entry_write_failed(aggregate, "view stats", e, report)

        if failed:
            report.entries_failed += 1
        else:
            report.entries_updated += 1

    def _entry_write_failed(self, aggregate: EntryAggregate, what: str, error: PersistenceFailure,
                            report: RunReport) -> None:
        report.add_error(f"entry {aggregate.entry_id} {what}: {error}")
        logger.error(f"[RECONCILE] Could not update {what} for '{aggregate.title}': {error}")

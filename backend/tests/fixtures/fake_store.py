"""
In-memory CatalogStore for reconciliation engine tests.

Keeps rows in plain dicts with the same idempotency rules as the SQL
adapter, and can be told to fail specific writes.
"""
import copy
from datetime import datetime
from typing import Optional

from catalog_store import CatalogStore, PersistenceFailure


class InMemoryCatalogStore(CatalogStore):
    """CatalogStore backed by dicts."""

    def __init__(self):
        self.sources: dict[str, dict] = {}
        self.entries: dict[int, dict] = {}
        self.groupings: dict[str, dict] = {}
        self.episodes: dict[str, dict] = {}
        self._next_entry_id = 1

        # Failure injection
        self.fail_episode_ids: set[str] = set()
        self.fail_grouping_ids: set[str] = set()
        self.fail_source_ids: set[str] = set()
        self.fail_last_updated_entry_ids: set[int] = set()

    # -------------------------------------------------------------------------
    # Helpers for assertions
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Deep copy of every table, for before/after comparisons."""
        return copy.deepcopy({
            "sources": self.sources,
            "entries": self.entries,
            "groupings": self.groupings,
            "episodes": self.episodes,
        })

    def entry_by_title(self, title: str) -> Optional[dict]:
        return next((e for e in self.entries.values() if e["title"] == title), None)

    def seed_entry(self, title: str, **fields) -> int:
        """Insert an entry directly, bypassing the contract."""
        entry_id = self.upsert_catalog_entry(title)
        self.entries[entry_id].update(fields)
        return entry_id

    # -------------------------------------------------------------------------
    # CatalogStore
    # -------------------------------------------------------------------------

    def upsert_source(self, source_id, display_name, url, avatar_url=None):
        if source_id in self.fail_source_ids:
            raise PersistenceFailure(f"injected failure for source {source_id}")
        existing = self.sources.get(source_id, {})
        self.sources[source_id] = {
            "source_id": source_id,
            "display_name": display_name,
            "url": url,
            "avatar_url": avatar_url or existing.get("avatar_url"),
        }

    def find_catalog_entry_by_title(self, title):
        entry = self.entry_by_title(title)
        return entry["id"] if entry else None

    def upsert_catalog_entry(self, title, synopsis=None, thumbnail_url=None, release_year=None):
        entry = self.entry_by_title(title)
        if entry is None:
            entry_id = self._next_entry_id
            self._next_entry_id += 1
            self.entries[entry_id] = {
                "id": entry_id,
                "title": title,
                "synopsis": synopsis,
                "thumbnail_url": thumbnail_url,
                "release_year": release_year,
                "last_updated_at": None,
                "total_view_count": 0,
                "weekly_view_delta": 0,
            }
            return entry_id
        for key, value in (("synopsis", synopsis), ("thumbnail_url", thumbnail_url), ("release_year", release_year)):
            if entry[key] is None:
                entry[key] = value
        return entry["id"]

    def upsert_grouping(self, grouping_id, source_id, entry_id, title, description, language):
        if grouping_id in self.fail_grouping_ids:
            raise PersistenceFailure(f"injected failure for grouping {grouping_id}")
        self.groupings[grouping_id] = {
            "grouping_id": grouping_id,
            "source_id": source_id,
            "entry_id": entry_id,
            "title": title,
            "description": description,
            "language": language,
        }

    def upsert_episode(self, item_id, grouping_id, title, episode_number, published_at,
                       thumbnail_url, view_count):
        if item_id in self.fail_episode_ids:
            raise PersistenceFailure(f"injected failure for episode {item_id}")
        self.episodes[item_id] = {
            "item_id": item_id,
            "grouping_id": grouping_id,
            "title": title,
            "episode_number": episode_number,
            "published_at": published_at,
            "thumbnail_url": thumbnail_url,
            "view_count": view_count,
        }

    def get_catalog_entry_total_views(self, entry_id):
        if entry_id not in self.entries:
            raise PersistenceFailure(f"Catalog entry {entry_id} not found")
        return self.entries[entry_id]["total_view_count"]

    def update_catalog_entry_view_stats(self, entry_id, total, delta):
        self.entries[entry_id]["total_view_count"] = total
        self.entries[entry_id]["weekly_view_delta"] = delta

    def update_catalog_entry_last_updated(self, entry_id, timestamp: datetime):
        if entry_id in self.fail_last_updated_entry_ids:
            raise PersistenceFailure(f"injected failure for entry {entry_id}")
        self.entries[entry_id]["last_updated_at"] = timestamp

    def update_catalog_entry_thumbnail_if_absent(self, entry_id, url):
        if self.entries[entry_id]["thumbnail_url"] is not None:
            return False
        self.entries[entry_id]["thumbnail_url"] = url
        return True

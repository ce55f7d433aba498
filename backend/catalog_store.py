"""
Catalog Store

The persistence contract the reconciliation engine depends on, plus the
SQLAlchemy adapter that implements it. All upserts are idempotent on
their natural key (title for entries, provider ID for everything else):
replaying unchanged upstream data leaves the stored rows untouched.

On SQLite and PostgreSQL every upsert is a single INSERT ... ON CONFLICT
DO UPDATE statement, so concurrent writers never interleave inside one
row. Other dialects fall back to read-modify-write inside one transaction.

The adapter also serves the read side used by the HTTP API (listing,
detail, top weekly, channels).
"""
import logging
import math
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_session
from models import Source, CatalogEntry, Grouping, Episode

logger = logging.getLogger(__name__)

PAGE_SIZE = 24
TOP_WEEKLY_LIMIT = 10
DEFAULT_SORT = "updated_desc"

_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class PersistenceFailure(Exception):
    """A store operation failed; the unit of work that issued it should be skipped."""
    pass


class CatalogStore(ABC):
    """Write operations the reconciliation engine needs from a catalog store."""

    @abstractmethod
    def upsert_source(self, source_id: str, display_name: str, url: str,
                      avatar_url: Optional[str] = None) -> None:
        """Create or refresh a source. A missing avatar keeps the stored one."""

    @abstractmethod
    def find_catalog_entry_by_title(self, title: str) -> Optional[int]:
        """Return the ID of the entry with exactly this canonical title, if any."""

    @abstractmethod
    def upsert_catalog_entry(self, title: str, synopsis: Optional[str] = None,
                             thumbnail_url: Optional[str] = None,
                             release_year: Optional[int] = None) -> int:
        """Create an entry keyed by title, or fill missing fields of the existing one. Returns its ID."""

    @abstractmethod
    def upsert_grouping(self, grouping_id: str, source_id: str, entry_id: int, title: str,
                        description: Optional[str], language: str) -> None:
        """Create or overwrite a grouping."""

    @abstractmethod
    def upsert_episode(self, item_id: str, grouping_id: str, title: str,
                       episode_number: Optional[int], published_at: Optional[datetime],
                       thumbnail_url: Optional[str], view_count: int) -> None:
        """Create or overwrite an episode."""

    @abstractmethod
    def get_catalog_entry_total_views(self, entry_id: int) -> int:
        """Return the entry's stored total view count."""

    @abstractmethod
    def update_catalog_entry_view_stats(self, entry_id: int, total: int, delta: int) -> None:
        """Store the entry's new total and weekly delta together."""

    @abstractmethod
    def update_catalog_entry_last_updated(self, entry_id: int, timestamp: datetime) -> None:
        """Store the entry's latest episode publish time."""

    @abstractmethod
    def update_catalog_entry_thumbnail_if_absent(self, entry_id: int, url: str) -> bool:
        """Set the thumbnail only when the entry has none. Returns True if it was set."""


@dataclass
class CatalogQuery:
    """Filters for the catalog listing."""
    search: str = ""
    sort: str = DEFAULT_SORT
    language: Optional[str] = None
    page: int = 1
    page_size: int = PAGE_SIZE


# Sort key -> ORDER BY clauses. Unknown keys fall back to DEFAULT_SORT.
SORT_OPTIONS = {
    "name_asc": (CatalogEntry.title.asc(),),
    "name_desc": (CatalogEntry.title.desc(),),
    "updated_asc": (CatalogEntry.last_updated_at.asc().nulls_last(), CatalogEntry.id.asc()),
    "updated_desc": (CatalogEntry.last_updated_at.desc().nulls_last(), CatalogEntry.id.desc()),
    "views_desc": (CatalogEntry.total_view_count.desc(), CatalogEntry.id.asc()),
}


class SqlCatalogStore(CatalogStore):
    """CatalogStore backed by the SQLAlchemy session factory."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or get_session

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[STORE] Database error: {e}")
            raise PersistenceFailure(str(e)) from e
        finally:
            session.close()

    def _upsert(self, session: Session, model, values: dict, key: list[str],
                update_columns: list[str], fill_only: tuple[str, ...] = ()) -> None:
        """
        Insert a row or update it on key conflict.

        Columns in update_columns are overwritten with the new values, except
        those also in fill_only, which are only written while still NULL.
        """
        dialect = session.get_bind().dialect.name
        insert_fn = _DIALECT_INSERTS.get(dialect)

        if insert_fn is not None:
            stmt = insert_fn(model).values(**values)
            set_ = {}
            for column in update_columns:
                if column in fill_only:
                    set_[column] = func.coalesce(getattr(model, column), getattr(stmt.excluded, column))
                else:
                    set_[column] = getattr(stmt.excluded, column)
            if set_:
                stmt = stmt.on_conflict_do_update(index_elements=key, set_=set_)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=key)
            session.execute(stmt)
            return

        existing = session.query(model).filter_by(**{k: values[k] for k in key}).with_for_update().first()
        if existing is None:
            session.add(model(**values))
            return
        for column in update_columns:
            if column in fill_only and getattr(existing, column) is not None:
                continue
            setattr(existing, column, values[column])

    # -------------------------------------------------------------------------
    # Write contract
    # -------------------------------------------------------------------------

    def upsert_source(self, source_id, display_name, url, avatar_url=None):
        update_columns = ["display_name", "url"]
        if avatar_url:
            update_columns.append("avatar_url")
        with self._session() as session:
            self._upsert(
                session, Source,
                {"source_id": source_id, "display_name": display_name, "url": url, "avatar_url": avatar_url},
                key=["source_id"],
                update_columns=update_columns,
            )
        logger.debug(f"[STORE] Upserted source {source_id}")

    def find_catalog_entry_by_title(self, title):
        with self._session() as session:
            return session.query(CatalogEntry.id).filter(CatalogEntry.title == title).scalar()

    def upsert_catalog_entry(self, title, synopsis=None, thumbnail_url=None, release_year=None):
        with self._session() as session:
            self._upsert(
                session, CatalogEntry,
                {
                    "title": title,
                    "synopsis": synopsis,
                    "thumbnail_url": thumbnail_url,
                    "release_year": release_year,
                    "total_view_count": 0,
                    "weekly_view_delta": 0,
                    "created_at": datetime.utcnow(),
                },
                key=["title"],
                update_columns=["synopsis", "thumbnail_url", "release_year"],
                fill_only=("synopsis", "thumbnail_url", "release_year"),
            )
            entry_id = session.query(CatalogEntry.id).filter(CatalogEntry.title == title).scalar()
        if entry_id is None:
            raise PersistenceFailure(f"Catalog entry '{title}' missing after upsert")
        return entry_id

    def upsert_grouping(self, grouping_id, source_id, entry_id, title, description, language):
        with self._session() as session:
            self._upsert(
                session, Grouping,
                {
                    "grouping_id": grouping_id,
                    "source_id": source_id,
                    "entry_id": entry_id,
                    "title": title,
                    "description": description,
                    "language": language,
                },
                key=["grouping_id"],
                update_columns=["source_id", "entry_id", "title", "description", "language"],
            )

    def upsert_episode(self, item_id, grouping_id, title, episode_number, published_at,
                       thumbnail_url, view_count):
        with self._session() as session:
            self._upsert(
                session, Episode,
                {
                    "item_id": item_id,
                    "grouping_id": grouping_id,
                    "title": title,
                    "episode_number": episode_number,
                    "published_at": published_at,
                    "thumbnail_url": thumbnail_url,
                    "view_count": view_count,
                },
                key=["item_id"],
                update_columns=["grouping_id", "title", "episode_number", "published_at",
                                "thumbnail_url", "view_count"],
            )

    def get_catalog_entry_total_views(self, entry_id):
        with self._session() as session:
            total = session.query(CatalogEntry.total_view_count).filter(CatalogEntry.id == entry_id).scalar()
        if total is None:
            raise PersistenceFailure(f"Catalog entry {entry_id} not found")
        return total

    def update_catalog_entry_view_stats(self, entry_id, total, delta):
        with self._session() as session:
            session.execute(
                update(CatalogEntry)
                .where(CatalogEntry.id == entry_id)
                .values(total_view_count=total, weekly_view_delta=delta)
            )

    def update_catalog_entry_last_updated(self, entry_id, timestamp):
        with self._session() as session:
            session.execute(
                update(CatalogEntry)
                .where(CatalogEntry.id == entry_id)
                .values(last_updated_at=timestamp)
            )

    def update_catalog_entry_thumbnail_if_absent(self, entry_id, url):
        with self._session() as session:
            result = session.execute(
                update(CatalogEntry)
                .where(CatalogEntry.id == entry_id, CatalogEntry.thumbnail_url.is_(None))
                .values(thumbnail_url=url)
            )
            return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Read side (HTTP API)
    # -------------------------------------------------------------------------

    def _languages_for(self, session: Session, entry_ids: list[int]) -> dict[int, list[str]]:
        languages: dict[int, set[str]] = {}
        if not entry_ids:
            return {}
        rows = (
            session.query(Grouping.entry_id, Grouping.language)
            .filter(Grouping.entry_id.in_(entry_ids))
            .distinct()
            .all()
        )
        for entry_id, language in rows:
            languages.setdefault(entry_id, set()).add(language)
        return {entry_id: sorted(values) for entry_id, values in languages.items()}

    def list_catalog_entries(self, query: CatalogQuery) -> tuple[list[dict], int]:
        """
        List entries that have a thumbnail, filtered and sorted.

        Returns (entries for the requested page, total page count).
        """
        order_by = SORT_OPTIONS.get(query.sort) or SORT_OPTIONS[DEFAULT_SORT]
        page = max(1, query.page)

        with self._session() as session:
            q = session.query(CatalogEntry).filter(CatalogEntry.thumbnail_url.isnot(None))
            if query.search:
                q = q.filter(CatalogEntry.title.ilike(f"%{query.search}%"))
            if query.language:
                q = q.filter(CatalogEntry.groupings.any(Grouping.language == query.language))

            total = q.count()
            total_pages = math.ceil(total / query.page_size) if total else 0

            entries = q.order_by(*order_by).offset((page - 1) * query.page_size).limit(query.page_size).all()
            languages = self._languages_for(session, [e.id for e in entries])
            return [e.to_dict(languages=languages.get(e.id)) for e in entries], total_pages

    def get_catalog_entry_with_episodes(self, entry_id: int) -> Optional[dict]:
        """Entry detail with its groupings and every episode in watch order."""
        with self._session() as session:
            entry = session.query(CatalogEntry).filter(CatalogEntry.id == entry_id).first()
            if entry is None:
                return None

            groupings = (
                session.query(Grouping)
                .filter(Grouping.entry_id == entry_id)
                .order_by(Grouping.language, Grouping.grouping_id)
                .all()
            )
            episodes = (
                session.query(Episode)
                .join(Grouping, Episode.grouping_id == Grouping.grouping_id)
                .filter(Grouping.entry_id == entry_id)
                .order_by(
                    Episode.episode_number.asc().nulls_last(),
                    Episode.published_at.asc(),
                    Episode.item_id,
                )
                .all()
            )

            result = entry.to_dict(languages=sorted({g.language for g in groupings}))
            result["groupings"] = [g.to_dict() for g in groupings]
            result["episodes"] = [e.to_dict() for e in episodes]
            return result

    def top_weekly(self, limit: int = TOP_WEEKLY_LIMIT) -> list[dict]:
        """Entries gaining views since the previous run, biggest gain first."""
        with self._session() as session:
            entries = (
                session.query(CatalogEntry)
                .filter(CatalogEntry.weekly_view_delta > 0)
                .order_by(CatalogEntry.weekly_view_delta.desc(), CatalogEntry.id.asc())
                .limit(limit)
                .all()
            )
            languages = self._languages_for(session, [e.id for e in entries])
            return [e.to_dict(languages=languages.get(e.id)) for e in entries]

    def list_sources(self) -> list[dict]:
        with self._session() as session:
            return [s.to_dict() for s in session.query(Source).order_by(Source.display_name).all()]

"""
Factory functions for creating test data.

Each factory creates a model instance with sensible defaults that can be overridden.
All factories accept a session parameter and commit the created object.
"""
import json
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from models import Source, CatalogEntry, Grouping, Episode, TaskExecution


# Counter for generating unique IDs
_counter = {"value": 0}


def _next_id() -> int:
    """Generate a unique incrementing ID."""
    _counter["value"] += 1
    return _counter["value"]


def reset_counter() -> None:
    """Reset the counter (useful between tests)."""
    _counter["value"] = 0


# -----------------------------------------------------------------------------
# Source Factory
# -----------------------------------------------------------------------------

def create_source(
    session: Session,
    source_id: str = None,
    display_name: str = None,
    avatar_url: Optional[str] = None,
    **kwargs
) -> Source:
    """Create a Source instance."""
    source_id = source_id or f"UC_{_next_id()}"
    source = Source(
        source_id=source_id,
        display_name=display_name or f"Channel {source_id}",
        url=kwargs.get("url", f"https://www.youtube.com/channel/{source_id}"),
        avatar_url=avatar_url,
    )
    session.add(source)
    session.commit()
    session.refresh(source)
    return source


# -----------------------------------------------------------------------------
# CatalogEntry Factory
# -----------------------------------------------------------------------------

def create_catalog_entry(
    session: Session,
    title: str = None,
    thumbnail_url: Optional[str] = "https://i.ytimg.test/default.jpg",
    last_updated_at: Optional[datetime] = None,
    total_view_count: int = 0,
    weekly_view_delta: int = 0,
    **kwargs
) -> CatalogEntry:
    """Create a CatalogEntry instance.

    Args:
        session: Database session
        title: Canonical title (unique)
        thumbnail_url: Representative thumbnail; pass None for an entry the listing hides
        last_updated_at: Latest episode publish time
        total_view_count: Stored view total
        weekly_view_delta: Stored delta
    """
    entry = CatalogEntry(
        title=title or f"Anime {_next_id()}",
        synopsis=kwargs.get("synopsis"),
        thumbnail_url=thumbnail_url,
        release_year=kwargs.get("release_year"),
        last_updated_at=last_updated_at or datetime.utcnow() - timedelta(days=_next_id()),
        total_view_count=total_view_count,
        weekly_view_delta=weekly_view_delta,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


# -----------------------------------------------------------------------------
# Grouping Factory
# -----------------------------------------------------------------------------

def create_grouping(
    session: Session,
    entry: CatalogEntry,
    source: Source,
    grouping_id: str = None,
    language: str = "en",
    **kwargs
) -> Grouping:
    """Create a Grouping linking an entry to a source."""
    grouping = Grouping(
        grouping_id=grouping_id or f"PL_{_next_id()}",
        source_id=source.source_id,
        entry_id=entry.id,
        title=kwargs.get("title", f"{entry.title} playlist"),
        description=kwargs.get("description"),
        language=language,
    )
    session.add(grouping)
    session.commit()
    session.refresh(grouping)
    return grouping


# -----------------------------------------------------------------------------
# Episode Factory
# -----------------------------------------------------------------------------

def create_episode(
    session: Session,
    grouping: Grouping,
    item_id: str = None,
    episode_number: Optional[int] = None,
    published_at: Optional[datetime] = None,
    view_count: int = 0,
    **kwargs
) -> Episode:
    """Create an Episode inside a grouping."""
    item_id = item_id or f"vid_{_next_id()}"
    episode = Episode(
        item_id=item_id,
        grouping_id=grouping.grouping_id,
        title=kwargs.get("title", f"Episode {episode_number}" if episode_number else item_id),
        episode_number=episode_number,
        published_at=published_at,
        thumbnail_url=kwargs.get("thumbnail_url"),
        view_count=view_count,
    )
    session.add(episode)
    session.commit()
    session.refresh(episode)
    return episode


# -----------------------------------------------------------------------------
# TaskExecution Factory
# -----------------------------------------------------------------------------

def create_task_execution(
    session: Session,
    task_id: str = "catalog_reconciliation",
    status: str = "completed",
    started_at: datetime = None,
    details: Optional[dict] = None,
    **kwargs
) -> TaskExecution:
    """Create a TaskExecution record."""
    started_at = started_at or datetime.utcnow()
    execution = TaskExecution(
        task_id=task_id,
        started_at=started_at,
        completed_at=kwargs.get("completed_at", started_at + timedelta(seconds=5)),
        duration_seconds=kwargs.get("duration_seconds", 5.0),
        status=status,
        success=kwargs.get("success", status == "completed"),
        message=kwargs.get("message", "Reconciled"),
        error=kwargs.get("error"),
        details=json.dumps(details) if details else None,
        triggered_by=kwargs.get("triggered_by", "scheduled"),
    )
    session.add(execution)
    session.commit()
    session.refresh(execution)
    return execution

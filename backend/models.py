"""
SQLAlchemy ORM models for the anime catalog and task execution history.
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, Index, ForeignKey
from sqlalchemy.orm import relationship
from database import Base


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


class Source(Base):
    """
    A tracked upstream channel.
    Rows are keyed by the provider's channel ID and refreshed on every run.
    """
    __tablename__ = "sources"

    source_id = Column(String(64), primary_key=True)  # Provider channel ID
    display_name = Column(String(255), nullable=False)
    url = Column(String(512), nullable=False)  # Public channel page
    avatar_url = Column(Text, nullable=True)  # Channel profile picture (remote URL)

    groupings = relationship("Grouping", back_populates="source")

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "source_id": self.source_id,
            "name": self.display_name,
            "url": self.url,
            "avatar_url": self.avatar_url,
        }

    def __repr__(self):
        return f"<Source(source_id={self.source_id}, name={self.display_name})>"


class CatalogEntry(Base):
    """
    A deduplicated anime title.

    The canonical title is the natural key: every playlist whose title
    normalizes to the same string lands on the same entry. View totals
    and the weekly delta are rewritten once per reconciliation run.
    """
    __tablename__ = "catalog_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, unique=True)
    synopsis = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)  # First write wins
    release_year = Column(Integer, nullable=True)
    last_updated_at = Column(DateTime, nullable=True)  # Latest episode publish time
    total_view_count = Column(BigInteger, default=0, nullable=False)
    weekly_view_delta = Column(BigInteger, default=0, nullable=False)  # May be negative
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    groupings = relationship("Grouping", back_populates="entry")

    __table_args__ = (
        Index("idx_catalog_entry_last_updated", last_updated_at.desc()),
        Index("idx_catalog_entry_weekly_delta", weekly_view_delta.desc()),
    )

    def to_dict(self, languages: list[str] | None = None) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "title": self.title,
            "synopsis": self.synopsis,
            "thumbnail_url": self.thumbnail_url,
            "release_year": self.release_year,
            "last_updated_at": _iso(self.last_updated_at),
            "total_view_count": self.total_view_count,
            "weekly_view_delta": self.weekly_view_delta,
            "languages": languages or [],
        }

    def __repr__(self):
        return f"<CatalogEntry(id={self.id}, title={self.title})>"


class Grouping(Base):
    """
    An upstream playlist linked to a catalog entry.
    Several groupings (e.g. subbed and dubbed releases) may share one entry.
    """
    __tablename__ = "groupings"

    grouping_id = Column(String(64), primary_key=True)  # Provider playlist ID
    source_id = Column(String(64), ForeignKey("sources.source_id"), nullable=False)
    entry_id = Column(Integer, ForeignKey("catalog_entries.id"), nullable=False)
    title = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    language = Column(String(5), nullable=False, default="en")  # "id" or "en", derived from title

    source = relationship("Source", back_populates="groupings")
    entry = relationship("CatalogEntry", back_populates="groupings")
    episodes = relationship("Episode", back_populates="grouping")

    __table_args__ = (
        Index("idx_grouping_entry", entry_id),
        Index("idx_grouping_language", language),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "grouping_id": self.grouping_id,
            "source_id": self.source_id,
            "entry_id": self.entry_id,
            "title": self.title,
            "description": self.description,
            "language": self.language,
        }

    def __repr__(self):
        return f"<Grouping(grouping_id={self.grouping_id}, entry_id={self.entry_id}, language={self.language})>"


class Episode(Base):
    """
    One upstream video, normalized.
    Keyed by the provider video ID; re-ingestion overwrites every field.
    """
    __tablename__ = "episodes"

    item_id = Column(String(64), primary_key=True)  # Provider video ID
    grouping_id = Column(String(64), ForeignKey("groupings.grouping_id"), nullable=False)
    title = Column(String(512), nullable=False)
    episode_number = Column(Integer, nullable=True)
    published_at = Column(DateTime, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    view_count = Column(BigInteger, default=0, nullable=False)

    grouping = relationship("Grouping", back_populates="episodes")

    __table_args__ = (
        Index("idx_episode_grouping", grouping_id),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "item_id": self.item_id,
            "grouping_id": self.grouping_id,
            "title": self.title,
            "episode_number": self.episode_number,
            "published_at": _iso(self.published_at),
            "thumbnail_url": self.thumbnail_url,
            "view_count": self.view_count,
        }

    def __repr__(self):
        return f"<Episode(item_id={self.item_id}, episode={self.episode_number})>"


class TaskExecution(Base):
    """
    Record of a task execution.
    One row per execution attempt with results.
    """
    __tablename__ = "task_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(50), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    status = Column(String(20), nullable=False)  # "running", "completed", "failed", "cancelled"
    success = Column(Boolean, nullable=True)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    total_items = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)
    details = Column(Text, nullable=True)  # JSON run report
    triggered_by = Column(String(20), default="scheduled", nullable=False)  # "scheduled", "startup", "manual"

    __table_args__ = (
        Index("idx_task_exec_task_id", task_id),
        Index("idx_task_exec_started_at", started_at.desc()),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "status": self.status,
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "details": json.loads(self.details) if self.details else None,
            "triggered_by": self.triggered_by,
        }

    def __repr__(self):
        return f"<TaskExecution(id={self.id}, task_id={self.task_id}, status={self.status})>"

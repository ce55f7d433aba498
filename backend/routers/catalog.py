"""
Catalog router: read-only anime listing, detail, top weekly and channels.

Everything here reads through SqlCatalogStore; the reconciliation task is
the only writer.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from catalog_store import CatalogQuery, PersistenceFailure, SqlCatalogStore, DEFAULT_SORT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Catalog"])


def get_store() -> SqlCatalogStore:
    return SqlCatalogStore()


@router.get("/animes")
async def list_animes(
    search: str = "",
    sort: str = DEFAULT_SORT,
    language: Optional[str] = Query(None, pattern="^(id|en)$"),
    page: int = Query(1, ge=1),
):
    """Paginated catalog listing. Only entries with a thumbnail are shown."""
    logger.debug(f"[CATALOG] GET /api/v1/animes search={search!r} sort={sort} language={language} page={page}")
    try:
        animes, total_pages = get_store().list_catalog_entries(
            CatalogQuery(search=search.strip(), sort=sort, language=language, page=page)
        )
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Failed to load catalog")

    return {
        "animes": animes,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
        },
    }


@router.get("/animes/top-weekly")
async def top_weekly_animes():
    """Entries with the largest positive view gain since the previous run."""
    try:
        return get_store().top_weekly()
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Failed to load top weekly")


@router.get("/animes/{entry_id}")
async def get_anime(entry_id: int):
    """One entry with its groupings and episodes in watch order."""
    try:
        anime = get_store().get_catalog_entry_with_episodes(entry_id)
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Failed to load anime")

    if anime is None:
        raise HTTPException(status_code=404, detail="Anime not found")
    return anime


@router.get("/channels")
async def list_channels():
    """Tracked channels keyed by channel ID."""
    try:
        sources = get_store().list_sources()
    except PersistenceFailure:
        raise HTTPException(status_code=500, detail="Failed to load channels")

    return {
        source["source_id"]: {
            "name": source["name"],
            "url": source["url"],
            "avatar_url": source["avatar_url"],
        }
        for source in sources
    }

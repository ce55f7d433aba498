"""
Feed Client for the YouTube Data API v3.

Fetches the channel -> playlist -> video hierarchy for tracked sources.
List calls page through the provider's cursor pagination (nextPageToken)
and return the fully accumulated sequence. Statistics lookups are split
into batches of at most 50 video IDs.

Every call is a single attempt by default: any transport error, non-2xx
status, or undecodable body raises FeedUnavailable and the caller decides
what to do. Bounded retry with exponential backoff can be switched on
with max_retries.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from config import CatalogSettings, DEFAULT_FEED_API_URL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_PAGE_SIZE = 50
MAX_IDS_PER_STATISTICS_CALL = 50

# Statuses worth retrying when retries are enabled
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class FeedUnavailable(Exception):
    """An upstream feed call failed or returned something we cannot decode."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code

    def __str__(self):
        parts = [self.args[0] if self.args else "feed unavailable"]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        return " ".join(parts)


@dataclass
class FeedGroup:
    """An upstream playlist."""
    group_id: str
    source_id: str
    title: str
    description: str = ""

    @classmethod
    def from_api(cls, data: dict, source_id: str) -> "FeedGroup":
        snippet = data.get("snippet") or {}
        return cls(
            group_id=data["id"],
            source_id=snippet.get("channelId") or source_id,
            title=snippet.get("title", ""),
            description=snippet.get("description", "") or "",
        )


@dataclass
class FeedItem:
    """An upstream video inside a playlist."""
    item_id: str
    group_id: str
    title: str
    published_at: Optional[datetime] = None
    thumbnail_url: Optional[str] = None
    view_count: int = 0

    @classmethod
    def from_api(cls, data: dict, group_id: str) -> "FeedItem":
        snippet = data["snippet"]
        return cls(
            item_id=snippet["resourceId"]["videoId"],
            group_id=group_id,
            title=snippet.get("title", ""),
            published_at=parse_timestamp(snippet.get("publishedAt")),
            thumbnail_url=pick_thumbnail(snippet.get("thumbnails"), prefer="high"),
        )


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into a naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"[FEED] Unparseable timestamp: {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def pick_thumbnail(thumbnails: Optional[dict], prefer: str = "high") -> Optional[str]:
    """Pick a thumbnail URL, preferring the requested quality."""
    if not thumbnails:
        return None
    for quality in (prefer, "high", "medium", "default"):
        url = (thumbnails.get(quality) or {}).get("url")
        if url:
            return url
    return None


def _parse_view_count(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class FeedClient:
    """Async client for the feed provider's REST API (API-key auth)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_FEED_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        statistics_batch_size: int = MAX_IDS_PER_STATISTICS_CALL,
        max_retries: int = 0,
        retry_backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.statistics_batch_size = min(statistics_batch_size, MAX_IDS_PER_STATISTICS_CALL)
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: CatalogSettings) -> "FeedClient":
        return cls(
            api_key=settings.feed_api_key,
            base_url=settings.feed_api_url,
            timeout=settings.request_timeout,
            page_size=settings.page_size,
            statistics_batch_size=settings.statistics_batch_size,
            max_retries=settings.max_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _display_url(self, path: str, params: dict) -> str:
        """URL for logs and errors, never including the API key."""
        query = "&".join(f"{k}={v}" for k, v in params.items() if k != "key")
        return f"{self.base_url}{path}?{query}" if query else f"{self.base_url}{path}"

    async def _get_json(self, path: str, params: dict) -> dict:
        """GET a resource and decode its JSON body, retrying only if configured to."""
        display_url = self._display_url(path, params)
        attempt = 0

        while True:
            try:
                return await self._get_json_once(path, params, display_url)
            except FeedUnavailable as e:
                retryable = e.status_code is None or e.status_code in RETRYABLE_STATUS_CODES
                if attempt >= self.max_retries or not retryable:
                    raise
                delay = self.retry_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(f"[FEED] {e}; retry {attempt}/{self.max_retries} in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def _get_json_once(self, path: str, params: dict, display_url: str) -> dict:
        try:
            response = await self._client.get(
                f"{self.base_url}{path}",
                params={**params, "key": self.api_key},
            )
        except httpx.HTTPError as e:
            raise FeedUnavailable(f"Request failed: {type(e).__name__}", url=display_url) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise FeedUnavailable("Non-success response", url=display_url, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            # status_code=0 marks a decode failure; it is never retried
            raise FeedUnavailable("Undecodable response body", url=display_url, status_code=0) from e

        if not isinstance(data, dict):
            raise FeedUnavailable("Unexpected response shape", url=display_url, status_code=0)
        return data

    def _items(self, data: dict, path: str) -> list:
        """The "items" array of a response; anything else is a malformed body."""
        items = data.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise FeedUnavailable("Malformed items array", url=f"{self.base_url}{path}", status_code=0)
        return items

    async def _paginate(self, path: str, params: dict) -> list[dict]:
        """Follow nextPageToken until the provider stops returning one."""
        all_items: list[dict] = []
        seen_tokens: set[str] = set()
        page_token = ""

        while True:
            page_params = {**params, "maxResults": self.page_size}
            if page_token:
                page_params["pageToken"] = page_token

            data = await self._get_json(path, page_params)
            all_items.extend(self._items(data, path))

            page_token = data.get("nextPageToken") or ""
            if not page_token:
                break
            if page_token in seen_tokens:
                raise FeedUnavailable(
                    "Provider repeated a page token",
                    url=self._display_url(path, params),
                )
            seen_tokens.add(page_token)

        return all_items

    # -------------------------------------------------------------------------
    # Playlists
    # -------------------------------------------------------------------------

    async def get_groups_for_source(self, source_id: str) -> list[FeedGroup]:
        """Get every playlist of a channel."""
        raw = await self._paginate("/playlists", {"part": "snippet", "channelId": source_id})
        try:
            return [FeedGroup.from_api(item, source_id) for item in raw]
        except (KeyError, TypeError, AttributeError) as e:
            raise FeedUnavailable(f"Malformed playlist entry: {e}", url=f"{self.base_url}/playlists", status_code=0) from e

    # -------------------------------------------------------------------------
    # Videos
    # -------------------------------------------------------------------------

    async def get_items_for_group(self, group_id: str) -> list[FeedItem]:
        """Get every video of a playlist (without view counts)."""
        raw = await self._paginate("/playlistItems", {"part": "snippet", "playlistId": group_id})
        try:
            return [FeedItem.from_api(item, group_id) for item in raw]
        except (KeyError, TypeError, AttributeError) as e:
            raise FeedUnavailable(f"Malformed playlist item: {e}", url=f"{self.base_url}/playlistItems", status_code=0) from e

    async def get_item_statistics(self, item_ids: list[str]) -> dict[str, int]:
        """Get view counts keyed by video ID, batching IDs per the provider limit."""
        view_counts: dict[str, int] = {}
        if not item_ids:
            return view_counts

        size = self.statistics_batch_size
        for start in range(0, len(item_ids), size):
            chunk = item_ids[start:start + size]
            data = await self._get_json("/videos", {"part": "statistics", "id": ",".join(chunk)})
            try:
                for detail in self._items(data, "/videos"):
                    video_id = detail.get("id")
                    if not video_id:
                        continue
                    statistics = detail.get("statistics") or {}
                    view_counts[video_id] = _parse_view_count(statistics.get("viewCount"))
            except (KeyError, TypeError, AttributeError) as e:
                raise FeedUnavailable(f"Malformed statistics entry: {e}", url=f"{self.base_url}/videos", status_code=0) from e

        return view_counts

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    async def get_source_avatar(self, source_id: str) -> Optional[str]:
        """Get the channel's profile picture URL, or None if the channel has none."""
        data = await self._get_json("/channels", {"part": "snippet", "id": source_id})
        items = self._items(data, "/channels")
        if not items:
            return None
        try:
            snippet = items[0].get("snippet") or {}
            return pick_thumbnail(snippet.get("thumbnails"), prefer="default")
        except (KeyError, TypeError, AttributeError) as e:
            raise FeedUnavailable(f"Malformed channel entry: {e}", url=f"{self.base_url}/channels", status_code=0) from e

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

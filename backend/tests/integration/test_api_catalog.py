"""
Integration tests for the catalog API endpoints.

Data is created with the model factories in the in-memory test database,
which the API reads through SqlCatalogStore.
"""
from datetime import datetime

import pytest

from tests.fixtures.factories import (
    create_catalog_entry,
    create_episode,
    create_grouping,
    create_source,
)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestListAnimes:
    """Tests for GET /api/v1/animes."""

    @pytest.mark.asyncio
    async def test_empty_catalog(self, async_client):
        response = await async_client.get("/api/v1/animes")

        assert response.status_code == 200
        assert response.json() == {"animes": [], "pagination": {"currentPage": 1, "totalPages": 0}}

    @pytest.mark.asyncio
    async def test_lists_entries_with_pagination(self, async_client, test_session):
        for i in range(25):
            create_catalog_entry(test_session, title=f"Anime {i:02d}")

        response = await async_client.get("/api/v1/animes", params={"sort": "name_asc", "page": 2})

        data = response.json()
        assert data["pagination"] == {"currentPage": 2, "totalPages": 2}
        assert [a["title"] for a in data["animes"]] == ["Anime 24"]

    @pytest.mark.asyncio
    async def test_search_and_language(self, async_client, test_session):
        source = create_source(test_session, source_id="UC1")
        subbed = create_catalog_entry(test_session, title="Attack on Titan")
        create_catalog_entry(test_session, title="Attack on Titan Junior High")
        create_catalog_entry(test_session, title="Frieren")
        create_grouping(test_session, subbed, source, language="id")

        response = await async_client.get("/api/v1/animes", params={"search": " titan ", "language": "id"})

        animes = response.json()["animes"]
        assert [a["title"] for a in animes] == ["Attack on Titan"]
        assert animes[0]["languages"] == ["id"]

    @pytest.mark.asyncio
    async def test_invalid_language_rejected(self, async_client):
        response = await async_client.get("/api/v1/animes", params={"language": "jp"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_page_rejected(self, async_client):
        response = await async_client.get("/api/v1/animes", params={"page": 0})
        assert response.status_code == 422


class TestGetAnime:
    """Tests for GET /api/v1/animes/{id}."""

    @pytest.mark.asyncio
    async def test_returns_entry_with_episodes(self, async_client, test_session):
        source = create_source(test_session, source_id="UC1")
        entry = create_catalog_entry(test_session, title="Frieren", synopsis="An elf mage")
        grouping = create_grouping(test_session, entry, source, grouping_id="PL1", language="id")
        create_episode(test_session, grouping, item_id="v2", episode_number=2,
                       published_at=datetime(2023, 10, 6, 12, 0, 0))
        create_episode(test_session, grouping, item_id="v1", episode_number=1,
                       published_at=datetime(2023, 9, 29, 12, 0, 0), view_count=99)

        response = await async_client.get(f"/api/v1/animes/{entry.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Frieren"
        assert data["synopsis"] == "An elf mage"
        assert data["groupings"][0]["grouping_id"] == "PL1"
        assert [e["item_id"] for e in data["episodes"]] == ["v1", "v2"]
        assert data["episodes"][0]["published_at"] == "2023-09-29T12:00:00Z"
        assert data["episodes"][0]["view_count"] == 99

    @pytest.mark.asyncio
    async def test_not_found(self, async_client):
        response = await async_client.get("/api/v1/animes/9999")
        assert response.status_code == 404


class TestTopWeekly:
    @pytest.mark.asyncio
    async def test_ranked_by_positive_delta(self, async_client, test_session):
        create_catalog_entry(test_session, title="Rising", weekly_view_delta=900)
        create_catalog_entry(test_session, title="Steady", weekly_view_delta=100)
        create_catalog_entry(test_session, title="Falling", weekly_view_delta=-40)

        response = await async_client.get("/api/v1/animes/top-weekly")

        assert response.status_code == 200
        assert [a["title"] for a in response.json()] == ["Rising", "Steady"]


class TestChannels:
    @pytest.mark.asyncio
    async def test_channels_keyed_by_id(self, async_client, test_session):
        create_source(test_session, source_id="UC1", display_name="Muse Indonesia", avatar_url="https://yt3.test/m.jpg")

        response = await async_client.get("/api/v1/channels")

        assert response.json() == {
            "UC1": {
                "name": "Muse Indonesia",
                "url": "https://www.youtube.com/channel/UC1",
                "avatar_url": "https://yt3.test/m.jpg",
            }
        }


class TestDatabaseErrors:
    @pytest.mark.asyncio
    async def test_store_failure_returns_500(self, async_client, test_engine):
        from database import Base
        Base.metadata.drop_all(bind=test_engine)

        response = await async_client.get("/api/v1/animes")

        assert response.status_code == 500
        # Restore tables for fixture teardown
        Base.metadata.create_all(bind=test_engine)

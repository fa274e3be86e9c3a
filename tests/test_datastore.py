"""Unit tests for crtdl_extract.datastore — HTTP fetching against httpx.MockTransport."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from conftest import medication, observation
from crtdl_extract.datastore import DataStore
from crtdl_extract.exceptions import DataStoreError

BASE_URL = "http://fhir.test/fhir/"


def _searchset(*resources, next_url: str | None = None) -> dict:
    page = {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [{"resource": r} for r in resources],
    }
    if next_url:
        page["link"] = [{"relation": "next", "url": next_url}]
    return page


def _store(handler, **kwargs) -> DataStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    kwargs.setdefault("max_attempts", 3)
    return DataStore(client, retry_min_seconds=0, retry_max_seconds=0, **kwargs)


class TestFetchResourcesByReferences:
    """Verify batched _id searches, paging and chunking."""

    @pytest.mark.asyncio
    async def test_id_search(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, parse_qs(request.content.decode())))
            return httpx.Response(200, json=_searchset(observation("1"), observation("2")))

        async with _store(handler) as store:
            found = await store.fetch_resources_by_references({"Observation": {"2", "1"}})

        assert [r["id"] for r in found] == ["1", "2"]
        method, path, form = seen[0]
        assert (method, path) == ("POST", "/fhir/Observation/_search")
        assert form["_id"] == ["1,2"]

    @pytest.mark.asyncio
    async def test_follows_next_links(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json=_searchset(observation("1"), next_url=f"{BASE_URL}page2"))
            return httpx.Response(200, json=_searchset(observation("2")))

        async with _store(handler) as store:
            found = await store.fetch_resources_by_references({"Observation": {"1", "2"}})

        assert sorted(r["id"] for r in found) == ["1", "2"]

    @pytest.mark.asyncio
    async def test_chunks_by_page_count(self):
        chunks = []

        def handler(request: httpx.Request) -> httpx.Response:
            chunks.append(parse_qs(request.content.decode())["_id"][0])
            return httpx.Response(200, json=_searchset())

        async with _store(handler, page_count=2) as store:
            await store.fetch_resources_by_references({"Observation": {"1", "2", "3"}})

        assert sorted(chunks) == ["1,2", "3"]

    @pytest.mark.asyncio
    async def test_drops_other_resource_types(self):
        def handler(request: httpx.Request) -> httpx.Response:
            outcome = {"resourceType": "OperationOutcome", "id": "oo"}
            return httpx.Response(200, json=_searchset(medication("7"), outcome))

        async with _store(handler) as store:
            found = await store.fetch_resources_by_references({"Medication": {"7"}})

        assert [r["id"] for r in found] == ["7"]

    @pytest.mark.asyncio
    async def test_failed_chunk_is_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("Observation/_search"):
                return httpx.Response(503)
            return httpx.Response(200, json=_searchset(medication("7")))

        async with _store(handler) as store:
            found = await store.fetch_resources_by_references(
                {"Observation": {"1"}, "Medication": {"7"}}
            )

        assert [r["id"] for r in found] == ["7"]


class TestRetry:
    """Verify transient failures are retried a bounded number of times."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(500)
            return httpx.Response(200, json=_searchset(observation("1")))

        async with _store(handler) as store:
            found = await store.search("Observation", {"_id": "1"})

        assert [r["id"] for r in found] == ["1"]
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503)

        async with _store(handler) as store:
            with pytest.raises(DataStoreError):
                await store.search("Observation", {"_id": "1"})

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_too_many_requests_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, json=_searchset())

        async with _store(handler) as store:
            assert await store.search("Observation", {"_id": "1"}) == []

        assert len(calls) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404])
    async def test_client_error_not_retried(self, status):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(status)

        async with _store(handler) as store:
            with pytest.raises(DataStoreError):
                await store.search("Observation", {"_id": "1"})

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=_searchset(observation("1")))

        async with _store(handler) as store:
            found = await store.search("Observation", {"_id": "1"})

        assert [r["id"] for r in found] == ["1"]
        assert len(calls) == 2


class TestNonJsonResponse:
    """Verify a success status with a body that is not JSON counts as a failed fetch."""

    @staticmethod
    def _html(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy error</html>")

    @pytest.mark.asyncio
    async def test_search_raises_data_store_error(self):
        async with _store(self._html) as store:
            with pytest.raises(DataStoreError, match="no JSON"):
                await store.search("Observation", {"_id": "1"})

    @pytest.mark.asyncio
    async def test_chunk_is_skipped(self):
        async with _store(self._html) as store:
            found = await store.fetch_resources_by_references({"Observation": {"1"}})

        assert found == []


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_uses_settings(self):
        from crtdl_extract.config import Settings

        store = DataStore.from_settings(Settings(fhir_base_url="http://blaze:8080/fhir", fhir_page_count=10))
        assert store.page_count == 10
        assert str(store._client.base_url) == "http://blaze:8080/fhir/"
        await store.aclose()

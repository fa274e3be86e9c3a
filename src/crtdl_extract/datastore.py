"""Batched record fetching from a FHIR server over HTTP."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from crtdl_extract.config import Settings, settings
from crtdl_extract.exceptions import DataStoreError
from crtdl_extract.fhir import Resource

logger = logging.getLogger(__name__)

# Client errors that are worth another attempt, next to every 5xx
_RETRY_STATUS = {429}


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in _RETRY_STATUS
    return False


def _chunks(ids: list[str], size: int) -> list[list[str]]:
    return [ids[i : i + size] for i in range(0, len(ids), size)]


class DataStore:
    """Async client for batched ``_id`` searches against a FHIR server."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        page_count: int | None = None,
        max_attempts: int | None = None,
        retry_min_seconds: float | None = None,
        retry_max_seconds: float | None = None,
    ) -> None:
        self._client = client
        self.page_count = page_count or settings.fhir_page_count
        self.max_attempts = max_attempts or settings.fhir_max_attempts
        self.retry_min_seconds = (
            settings.fhir_retry_min_seconds if retry_min_seconds is None else retry_min_seconds
        )
        self.retry_max_seconds = (
            settings.fhir_retry_max_seconds if retry_max_seconds is None else retry_max_seconds
        )

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> DataStore:
        config = config or settings
        client = httpx.AsyncClient(
            base_url=config.fhir_base_url.rstrip("/") + "/",
            timeout=config.fhir_request_timeout,
            headers={"Accept": "application/fhir+json"},
        )
        return cls(
            client,
            page_count=config.fhir_page_count,
            max_attempts=config.fhir_max_attempts,
            retry_min_seconds=config.fhir_retry_min_seconds,
            retry_max_seconds=config.fhir_retry_max_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DataStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send one request with retries; raise :class:`DataStoreError` when they run out."""

        @retry(
            retry=retry_if_exception(_should_retry),
            wait=wait_exponential(
                multiplier=self.retry_min_seconds,
                min=self.retry_min_seconds,
                max=self.retry_max_seconds,
            ),
            stop=stop_after_attempt(self.max_attempts),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async def _send() -> dict[str, Any]:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()

        try:
            return await _send()
        except httpx.HTTPError as exc:
            raise DataStoreError(f"{method} {url} failed: {exc}") from exc
        except ValueError as exc:
            raise DataStoreError(f"{method} {url} returned no JSON: {exc}") from exc

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_resources_by_references(
        self, grouped_references: dict[str, set[str]]
    ) -> list[Resource]:
        """Fetch ``{type: {ids}}`` in ``_id`` search chunks of ``page_count``.

        A chunk that fails after all retries is logged and skipped, so its
        references simply stay unloaded.
        """
        tasks = [
            self._fetch_chunk(res_type, chunk)
            for res_type, ids in grouped_references.items()
            for chunk in _chunks(sorted(ids), self.page_count)
        ]
        results = await asyncio.gather(*tasks)
        return [resource for chunk in results for resource in chunk]

    async def _fetch_chunk(self, res_type: str, ids: list[str]) -> list[Resource]:
        try:
            return await self.search(
                res_type, {"_id": ",".join(ids), "_count": str(self.page_count)}
            )
        except DataStoreError as exc:
            logger.error("Giving up on %d %s references: %s", len(ids), res_type, exc)
            return []

    async def search(self, res_type: str, params: dict[str, str]) -> list[Resource]:
        """POST a search and follow ``next`` links, returning resources of *res_type*."""
        page = await self._request("POST", f"{res_type}/_search", data=params)
        found: list[Resource] = []
        while True:
            for entry in page.get("entry", []):
                resource = entry.get("resource", {})
                if resource.get("resourceType") == res_type:
                    found.append(resource)
                else:
                    logger.warning(
                        "Dropping %s entry from %s search", resource.get("resourceType"), res_type
                    )
            next_url = next(
                (link["url"] for link in page.get("link", []) if link.get("relation") == "next"),
                None,
            )
            if next_url is None:
                return found
            page = await self._request("GET", next_url)

"""Console-log retrieval for resolved work items."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

import httpx

from pipeline_insights._http import ensure_success
from pipeline_insights.config import HttpConfig
from pipeline_insights.errors import TransportError
from pipeline_insights.models import WorkItem, WorkItemConsole

logger = logging.getLogger(__name__)


class ConsoleFetcher:
    """Download the raw console text behind a work item's console URI.

    Console URIs are pre-signed, so requests carry no credentials.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 4,
        http: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency!r}")
        http = http or HttpConfig()
        self._max_concurrency = max_concurrency
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                timeout=httpx.Timeout(http.timeout_seconds, connect=http.connect_timeout_seconds),
                follow_redirects=True,
            )
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def fetch_console(self, work_item: WorkItem) -> WorkItemConsole:
        target = f"work item {work_item.job_id}/{work_item.work_item_id}"
        try:
            response = await self._http_client.get(work_item.console_uri)
        except httpx.HTTPError as exc:
            raise TransportError(f"fetch console request for {target} failed: {exc}") from exc
        ensure_success(response, operation="fetch console", target=target)
        return WorkItemConsole(
            job_id=work_item.job_id,
            work_item_id=work_item.work_item_id,
            text=response.text,
        )

    async def fetch_consoles(self, work_items: Sequence[WorkItem]) -> list[WorkItemConsole]:
        """Fetch every console concurrently; output order matches input order.

        A single failure fails the whole batch.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(work_item: WorkItem) -> WorkItemConsole:
            async with semaphore:
                return await self.fetch_console(work_item)

        consoles = await asyncio.gather(*(_bounded(item) for item in work_items))
        logger.debug("Fetched %d console log(s)", len(consoles))
        return list(consoles)

"""Shared fixtures: fake credentials and mock-transport backed clients."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from pipeline_insights.azdo import AzdoClient
from pipeline_insights.config import AzdoConfig, HelixConfig, HttpConfig
from pipeline_insights.console import ConsoleFetcher
from pipeline_insights.helix import PROJECTED_COLUMNS, HelixClient
from pipeline_insights.models import WorkItem

Handler = Callable[[httpx.Request], httpx.Response]

AZDO_BASE = "https://dev.azure.com/dnceng-public/public/"
KUSTO_QUERY_URL = "https://engsrvprod.kusto.windows.net/v1/rest/query"


class FakeTokenProvider:
    """Records requested audiences and hands out a fixed token."""

    def __init__(self, token: str = "fake-token") -> None:
        self.token = token
        self.audiences: list[str] = []

    async def get_token(self, audience: str) -> str:
        self.audiences.append(audience)
        return self.token


@pytest.fixture
def credentials() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
async def make_azdo_client() -> AsyncIterator[Callable[..., AzdoClient]]:
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler, *, max_concurrency: int = 4) -> AzdoClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(http_client)
        return AzdoClient(
            AzdoConfig(),
            "fake-token",
            http=HttpConfig(max_concurrency=max_concurrency),
            http_client=http_client,
        )

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def make_helix_client() -> AsyncIterator[Callable[[Handler], HelixClient]]:
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler) -> HelixClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(http_client)
        return HelixClient(HelixConfig(), "fake-token", http_client=http_client)

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def make_console_fetcher() -> AsyncIterator[Callable[..., ConsoleFetcher]]:
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler, *, max_concurrency: int = 4) -> ConsoleFetcher:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(http_client)
        return ConsoleFetcher(max_concurrency=max_concurrency, http_client=http_client)

    yield _make
    for client in clients:
        await client.aclose()


def work_item_row(**overrides: Any) -> dict[str, Any]:
    """A Kusto result row (column name → value) for one failed work item."""
    row: dict[str, Any] = {
        "FriendlyName": "System.Runtime.Tests",
        "ExecutionTime": 125.7,
        "QueuedTime": 3.2,
        "AzdoBuildId": 1234,
        "AzdoPhaseName": "Windows_NT x64 Debug",
        "AzdoAttempt": "1",
        "MachineName": "a00ABC",
        "ExitCode": 1,
        "ConsoleUri": "https://helix.example/console/1/1",
        "JobId": 9876543210,
        "JobName": "job-abc",
        "QueueName": "windows.amd64.open",
        "Finished": "2024-05-01T10:00:00.1234567Z",
        "WorkItemId": 5555555555,
        "Status": "Finished",
    }
    row.update(overrides)
    return row


def kusto_response(
    rows: list[dict[str, Any]], columns: tuple[str, ...] = PROJECTED_COLUMNS
) -> dict[str, Any]:
    """Wrap rows in a v1 REST query response with one primary table."""
    return {
        "Tables": [
            {
                "TableName": "Table_0",
                "Columns": [{"ColumnName": name, "DataType": "Object"} for name in columns],
                "Rows": [[row.get(name) for name in columns] for row in rows],
            },
            {"TableName": "Table_1", "Columns": [], "Rows": []},
        ]
    }


def make_work_item(**overrides: Any) -> WorkItem:
    fields: dict[str, Any] = {
        "friendly_name": "System.Runtime.Tests",
        "execution_time": 125,
        "queued_time": 3,
        "azdo_build_id": 1234,
        "azdo_phase_name": "Windows_NT x64 Debug",
        "azdo_attempt": 1,
        "machine_name": "a00ABC",
        "exit_code": 1,
        "console_uri": "https://helix.example/console/1/1",
        "job_id": 1,
        "job_name": "job-abc",
        "queue_name": "windows.amd64.open",
        "finished": "2024-05-01T10:00:00Z",
        "work_item_id": 1,
        "status": "Finished",
    }
    fields.update(overrides)
    return WorkItem(**fields)

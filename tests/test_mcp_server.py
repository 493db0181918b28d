"""Tests for the MCP tool surface, exercised through an in-process client."""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import FakeTokenProvider, kusto_response, work_item_row
from fastmcp import Client, FastMCP
from fastmcp.exceptions import ToolError

from pipeline_insights.azdo import AzdoClient
from pipeline_insights.config import AzdoConfig, HelixConfig, PipelineSettings
from pipeline_insights.console import ConsoleFetcher
from pipeline_insights.helix import HelixClient
from pipeline_insights.mcp_server import build_server, serve
from pipeline_insights.queries import PipelineQueries

pytestmark = pytest.mark.unit

EXPECTED_TOOLS = {
    "azdo_recent_builds",
    "azdo_builds_for_repo",
    "azdo_pr_builds",
    "azdo_test_failures",
    "azdo_timeline",
    "azdo_jobs",
    "azdo_artifacts",
    "helix_work_items_for_build",
    "helix_work_items_for_pr",
    "helix_work_item",
    "helix_console",
}


class _Backend:
    """Routes requests by host and records them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.kusto_rows = [
            work_item_row(JobId=42, WorkItemId=7, ConsoleUri="https://logs.example/42/7")
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "dev.azure.com":
            if request.url.path.endswith("/timeline"):
                records = [
                    {"id": "j", "name": "Linux", "type": "Job", "order": 1, "parentId": "p"},
                    {"id": "p", "name": "Phase", "type": "Phase", "order": 1},
                ]
                return httpx.Response(200, json={"records": records})
            if request.url.path.endswith("/_apis/build/builds"):
                build = {
                    "id": 5,
                    "buildNumber": "20240501.5",
                    "status": "completed",
                    "sourceBranch": "refs/heads/main",
                    "definition": {"name": "runtime"},
                }
                return httpx.Response(200, json={"count": 1, "value": [build]})
            return httpx.Response(404, json={"message": "not found"})
        if request.url.host == "logs.example":
            return httpx.Response(200, text="console text")
        return httpx.Response(200, json=kusto_response(self.kusto_rows))

    def last(self, host: str) -> httpx.Request:
        return [r for r in self.requests if r.url.host == host][-1]


@pytest.fixture
def backend() -> _Backend:
    return _Backend()


@pytest.fixture
async def server(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as http_client:
        queries = PipelineQueries(
            builds=AzdoClient(AzdoConfig(), "t", http_client=http_client),
            analytics=HelixClient(HelixConfig(), "t", http_client=http_client),
            consoles=ConsoleFetcher(http_client=http_client),
        )
        yield build_server(queries)
        await queries.aclose()


async def _call(server, name: str, arguments: dict):
    async with Client(server) as client:
        result = await client.call_tool(name, arguments)
    return json.loads(result.data)


async def test_registers_every_tool(server):
    async with Client(server) as client:
        tools = await client.list_tools()

    assert {tool.name for tool in tools} == EXPECTED_TOOLS
    for tool in tools:
        assert tool.description


async def test_tool_parameters_are_described(server):
    async with Client(server) as client:
        tools = {tool.name: tool for tool in await client.list_tools()}

    schema = tools["helix_work_items_for_build"].inputSchema
    assert set(schema["required"]) == {"owner", "repository", "build_number"}
    assert "include_all" in schema["properties"]
    assert "expensive" in schema["properties"]["include_all"]["description"].lower()


async def test_recent_builds_document(server, backend):
    builds = await _call(server, "azdo_recent_builds", {"top": 3})

    assert builds == [
        {
            "id": 5,
            "buildNumber": "20240501.5",
            "status": "completed",
            "result": None,
            "uri": "https://dev.azure.com/dnceng-public/public/_build/results?buildId=5",
            "sourceBranch": "refs/heads/main",
            "definitionName": "runtime",
            "finishTime": None,
        }
    ]
    assert backend.last("dev.azure.com").url.params["$top"] == "3"


async def test_repo_builds_maps_filter(server, backend):
    await _call(server, "azdo_builds_for_repo", {"repository": "dotnet/runtime", "filter": "pr"})
    assert backend.last("dev.azure.com").url.params["reasonFilter"] == "pullRequest"

    await _call(server, "azdo_builds_for_repo", {"repository": "dotnet/runtime", "filter": "x"})
    assert "reasonFilter" not in backend.last("dev.azure.com").url.params


async def test_timeline_and_jobs(server):
    timeline = await _call(server, "azdo_timeline", {"build_id": 5})
    jobs = await _call(server, "azdo_jobs", {"build_id": 5})

    assert [r["id"] for r in timeline["records"]] == ["j", "p"]
    assert timeline["records"][0]["recordType"] == "Job"
    assert [job["name"] for job in jobs] == ["Linux"]


async def test_work_items_for_build(server, backend):
    items = await _call(
        server,
        "helix_work_items_for_build",
        {"owner": "dotnet", "repository": "runtime", "build_number": 1234},
    )

    assert items[0]["azdoBuildId"] == 1234
    assert items[0]["jobId"] == 42
    csl = json.loads(backend.last("engsrvprod.kusto.windows.net").content)["csl"]
    assert "ExitCode != 0" in csl


async def test_console(server):
    console = await _call(server, "helix_console", {"job_id": 42, "work_item_id": 7})
    assert console == {"jobId": 42, "workItemId": 7, "text": "console text"}


async def test_backend_failure_surfaces_as_tool_error(server):
    with pytest.raises(ToolError, match="404"):
        await _call(server, "azdo_artifacts", {"build_id": 5})


async def test_invalid_repository_surfaces_as_tool_error(server, backend):
    with pytest.raises(ToolError, match="owner/repository"):
        await _call(server, "azdo_pr_builds", {"repository": "runtime", "pr_number": 1})
    assert backend.requests == []


class _ClosableTokenProvider(FakeTokenProvider):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


class TestServe:
    @pytest.fixture(autouse=True)
    def _no_exporter(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

    async def test_closes_credentials_after_serving(self, monkeypatch):
        served: list[str] = []

        async def fake_run_async(self, transport="stdio", **kwargs):
            served.append(transport)

        monkeypatch.setattr(FastMCP, "run_async", fake_run_async)
        credentials = _ClosableTokenProvider()

        await serve(PipelineSettings(), credentials)

        assert served == ["stdio"]
        assert credentials.closed

    async def test_closes_credentials_when_server_fails(self, monkeypatch):
        async def failing_run_async(self, transport="stdio", **kwargs):
            raise RuntimeError("stdio closed")

        monkeypatch.setattr(FastMCP, "run_async", failing_run_async)
        credentials = _ClosableTokenProvider()

        with pytest.raises(RuntimeError, match="stdio closed"):
            await serve(PipelineSettings(), credentials)

        assert credentials.closed

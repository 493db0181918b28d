"""Unit tests for the Helix analytics adapter and its query text."""

from __future__ import annotations

import json
import logging

import httpx
import pytest
from conftest import KUSTO_QUERY_URL, FakeTokenProvider, kusto_response, work_item_row

from pipeline_insights.azdo import AzdoClient
from pipeline_insights.config import AzdoConfig, HelixConfig
from pipeline_insights.credentials import KUSTO_AUDIENCE
from pipeline_insights.errors import (
    AmbiguousWorkItemError,
    AnalyticsUnreachableError,
    BackendRequestError,
    CorrelationError,
    DeserializationError,
    InvalidArgumentError,
    TransportError,
    WorkItemNotFoundError,
)
from pipeline_insights.helix import (
    HelixClient,
    build_work_item_lookup_query,
    build_work_items_query,
    parse_primary_table,
)

pytestmark = pytest.mark.unit


def _respond(rows, captured: list[httpx.Request] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return httpx.Response(200, json=kusto_response(rows))

    return handler


def _csl(request: httpx.Request) -> str:
    return json.loads(request.content)["csl"]


class TestQueryText:
    def test_failed_only_by_default(self):
        query = build_work_items_query("dotnet", "runtime", build_number=1234)

        assert 'where Repository == "dotnet/runtime"' in query
        assert "| where AzdoBuildId == 1234" in query
        assert "| where ExitCode != 0" in query
        assert "Branch" not in query

    def test_include_all_drops_exit_code_filter(self):
        query = build_work_items_query("dotnet", "runtime", build_number=1, include_all=True)
        assert "ExitCode !=" not in query

    def test_pull_request_filters_on_merge_ref(self):
        query = build_work_items_query("dotnet", "runtime", pr_number=98765)

        assert '| where Branch == "refs/pull/98765/merge"' in query
        assert "AzdoBuildId ==" not in query

    def test_projection_lists_every_column(self):
        project = build_work_items_query("dotnet", "runtime").splitlines()[-1]
        assert project.startswith("| project FriendlyName, ExecutionTime, QueuedTime")
        assert project.endswith("WorkItemId, Status")

    def test_lookup_query(self):
        query = build_work_item_lookup_query(42, 7)

        assert "| where JobId == 42" in query
        assert "| where WorkItemId == 7" in query
        assert "ExitCode !=" not in query

    @pytest.mark.parametrize(
        ("owner", "repo"),
        [('dotnet" or 1==1 //', "runtime"), ("dotnet", "run time"), ("", "runtime")],
    )
    def test_unsafe_identifiers_rejected(self, owner, repo):
        with pytest.raises(InvalidArgumentError):
            build_work_items_query(owner, repo)

    def test_negative_build_rejected(self):
        with pytest.raises(InvalidArgumentError, match="build_number"):
            build_work_items_query("dotnet", "runtime", build_number=-5)


class TestParsePrimaryTable:
    def test_rows_keyed_by_column_name(self):
        columns = [{"ColumnName": "A"}, {"ColumnName": "B"}]
        payload = {"Tables": [{"Columns": columns, "Rows": [[1, "x"], [2, "y"]]}]}
        assert parse_primary_table(payload, operation="q") == [
            {"A": 1, "B": "x"},
            {"A": 2, "B": "y"},
        ]

    def test_no_tables(self):
        with pytest.raises(DeserializationError, match="no result tables"):
            parse_primary_table({"Tables": []}, operation="q")

    def test_ragged_row(self):
        payload = {"Tables": [{"Columns": [{"ColumnName": "A"}], "Rows": [[1, 2]]}]}
        with pytest.raises(DeserializationError, match="row 0"):
            parse_primary_table(payload, operation="q")


class TestWorkItemsForBuild:
    async def test_request_shape(self, make_helix_client):
        captured: list[httpx.Request] = []
        client = make_helix_client(_respond([work_item_row()], captured))

        await client.work_items_for_build("dotnet", "runtime", 1234)

        request = captured[0]
        assert str(request.url) == KUSTO_QUERY_URL
        assert request.method == "POST"
        body = json.loads(request.content)
        assert body["db"] == "engineeringdata"
        assert "| where AzdoBuildId == 1234" in body["csl"]
        assert request.headers["Authorization"] == "Bearer fake-token"
        assert request.headers["x-ms-client-request-id"].startswith("pipeline-insights;")

    async def test_row_mapping(self, make_helix_client):
        client = make_helix_client(_respond([work_item_row()]))

        [item] = await client.work_items_for_build("dotnet", "runtime", 1234)

        assert item.friendly_name == "System.Runtime.Tests"
        assert item.execution_time == 125
        assert item.queued_time == 3
        assert item.azdo_build_id == 1234
        assert item.azdo_phase_name == "Windows_NT x64 Debug"
        assert item.azdo_attempt == 1
        assert item.key == (9876543210, 5555555555)
        assert item.finished.microsecond == 123456

    async def test_every_item_correlates_to_requested_build(self, make_helix_client):
        rows = [work_item_row(WorkItemId=i, ExitCode=i) for i in range(1, 4)]
        client = make_helix_client(_respond(rows))

        items = await client.work_items_for_build("dotnet", "runtime", 1234)

        assert {item.azdo_build_id for item in items} == {1234}
        assert all(item.exit_code != 0 for item in items)

    async def test_succeeded_rows_dropped_client_side(self, make_helix_client, caplog):
        rows = [work_item_row(WorkItemId=1, ExitCode=0), work_item_row(WorkItemId=2, ExitCode=3)]
        client = make_helix_client(_respond(rows))

        with caplog.at_level(logging.WARNING, logger="pipeline_insights.helix"):
            items = await client.work_items_for_build("dotnet", "runtime", 1234)

        assert [item.work_item_id for item in items] == [2]
        assert "Dropped 1 succeeded" in caplog.text

    async def test_include_all_keeps_succeeded_rows(self, make_helix_client):
        captured: list[httpx.Request] = []
        rows = [work_item_row(WorkItemId=1, ExitCode=0), work_item_row(WorkItemId=2, ExitCode=3)]
        client = make_helix_client(_respond(rows, captured))

        items = await client.work_items_for_build("dotnet", "runtime", 1234, include_all=True)

        assert [item.exit_code for item in items] == [0, 3]
        assert "ExitCode !=" not in _csl(captured[0])

    async def test_empty_result(self, make_helix_client):
        client = make_helix_client(_respond([]))
        assert await client.work_items_for_build("dotnet", "runtime", 1234) == []


class TestCorrelationPolicy:
    @pytest.mark.parametrize(
        ("overrides", "fragment"),
        [
            ({"AzdoBuildId": None}, "BuildId"),
            ({"AzdoPhaseName": ""}, "System.PhaseName"),
            ({"AzdoPhaseName": None}, "System.PhaseName"),
            ({"AzdoAttempt": "first"}, "System.JobAttempt"),
            ({"AzdoAttempt": ""}, "System.JobAttempt"),
        ],
    )
    async def test_uncorrelatable_row_fails_whole_query(
        self, make_helix_client, overrides, fragment
    ):
        rows = [work_item_row(WorkItemId=1), work_item_row(WorkItemId=2, **overrides)]
        client = make_helix_client(_respond(rows))

        with pytest.raises(CorrelationError, match=fragment):
            await client.work_items_for_build("dotnet", "runtime", 1234)

    async def test_correlation_error_is_a_deserialization_error(self, make_helix_client):
        client = make_helix_client(_respond([work_item_row(AzdoBuildId=None)]))

        with pytest.raises(DeserializationError):
            await client.work_item(1, 1)


class TestPullRequests:
    async def test_merge_ref_matches_build_service(self, make_helix_client):
        helix_requests: list[httpx.Request] = []
        azdo_requests: list[httpx.Request] = []

        def azdo_handler(request: httpx.Request) -> httpx.Response:
            azdo_requests.append(request)
            return httpx.Response(200, json={"count": 0, "value": []})

        helix = make_helix_client(_respond([], helix_requests))
        async with httpx.AsyncClient(transport=httpx.MockTransport(azdo_handler)) as http_client:
            azdo = AzdoClient(AzdoConfig(), "fake-token", http_client=http_client)
            await azdo.list_builds_for_pull_request("dotnet/runtime", 98765)
        await helix.work_items_for_pull_request("dotnet", "runtime", 98765)

        branch = azdo_requests[0].url.params["branchName"]
        assert f'| where Branch == "{branch}"' in _csl(helix_requests[0])


class TestPointLookup:
    async def test_exactly_one(self, make_helix_client):
        client = make_helix_client(_respond([work_item_row(JobId=42, WorkItemId=7, ExitCode=0)]))

        item = await client.work_item(42, 7)

        assert item.key == (42, 7)
        assert item.exit_code == 0

    async def test_not_found(self, make_helix_client):
        with pytest.raises(WorkItemNotFoundError):
            await make_helix_client(_respond([])).work_item(42, 7)

    async def test_ambiguous(self, make_helix_client):
        rows = [work_item_row(JobId=42, WorkItemId=7), work_item_row(JobId=42, WorkItemId=7)]
        with pytest.raises(AmbiguousWorkItemError, match="2 rows"):
            await make_helix_client(_respond(rows)).work_item(42, 7)

    async def test_not_found_is_lookup_error(self, make_helix_client):
        with pytest.raises(LookupError):
            await make_helix_client(_respond([])).work_item(1, 1)


class TestFailures:
    async def test_unreachable_cluster_hints_at_vpn(self, make_helix_client, caplog):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with caplog.at_level(logging.WARNING, logger="pipeline_insights.helix"):
            with pytest.raises(AnalyticsUnreachableError) as exc_info:
                await make_helix_client(handler).work_items_for_build("dotnet", "runtime", 1)

        assert isinstance(exc_info.value, TransportError)
        assert "VPN" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectTimeout)
        assert "unreachable" in caplog.text

    async def test_query_rejected(self, make_helix_client):
        client = make_helix_client(
            lambda _: httpx.Response(400, json={"error": {"message": "Semantic error"}})
        )

        with pytest.raises(BackendRequestError, match="Semantic error") as exc_info:
            await client.work_item(1, 1)

        assert exc_info.value.status_code == 400

    async def test_malformed_row(self, make_helix_client):
        client = make_helix_client(_respond([work_item_row(JobId="not-a-number")]))

        with pytest.raises(DeserializationError):
            await client.work_item(1, 1)


async def test_connect_requests_cluster_audience():
    credentials = FakeTokenProvider()
    client = await HelixClient.connect(HelixConfig(), credentials)
    await client.aclose()

    assert credentials.audiences == [KUSTO_AUDIENCE]

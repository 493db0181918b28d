"""Analytics-service adapter for Helix work items.

Work items live in the ``engineeringdata`` Kusto database as two streams,
``Jobs`` and ``WorkItems``, joined on ``JobId``.  Each job carries a JSON
``Properties`` blob written by the build that queued it; the ``BuildId``,
``System.PhaseName`` and ``System.JobAttempt`` keys in that blob are what
tie a work item back to its build.

Queries are sent to the cluster's v1 REST endpoint and the primary result
table is parsed by column name.

Correlation policy: every returned row must carry a numeric build id, a
phase name and a numeric attempt.  A row missing any of them fails the whole
query with :class:`CorrelationError` rather than being dropped, since a
silently dropped row would corrupt build/work-item linkage downstream.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_pascal

from pipeline_insights._http import decode_json, ensure_success, parse_model
from pipeline_insights.config import HelixConfig, HttpConfig
from pipeline_insights.credentials import KUSTO_AUDIENCE, TokenProvider
from pipeline_insights.errors import (
    AmbiguousWorkItemError,
    AnalyticsUnreachableError,
    CorrelationError,
    DeserializationError,
    WorkItemNotFoundError,
)
from pipeline_insights.identifiers import merge_ref, require_non_negative, validate_owner_repo
from pipeline_insights.models import Timestamp, WorkItem

logger = logging.getLogger(__name__)

QUERY_PATH = "/v1/rest/query"
CLIENT_APP_NAME = "pipeline-insights"

PROJECTED_COLUMNS = (
    "FriendlyName",
    "ExecutionTime",
    "QueuedTime",
    "AzdoBuildId",
    "AzdoPhaseName",
    "AzdoAttempt",
    "MachineName",
    "ExitCode",
    "ConsoleUri",
    "JobId",
    "JobName",
    "QueueName",
    "Finished",
    "WorkItemId",
    "Status",
)

_CORRELATION_EXTENDS = (
    "| extend AzdoPhaseName = tostring(p[\"System.PhaseName\"])",
    "| extend AzdoAttempt = tostring(p[\"System.JobAttempt\"])",
    "| extend ExecutionTime = (Finished - Started) / 1s",
    "| extend QueuedTime = (Started - Queued) / 1s",
)
_FAILED_ONLY_FILTER = "| where ExitCode != 0"


# ---------------------------------------------------------------------------
# Query text
# ---------------------------------------------------------------------------


def _project_clause() -> str:
    return "| project " + ", ".join(PROJECTED_COLUMNS)


def build_work_items_query(
    owner: str,
    repo: str,
    *,
    build_number: int | None = None,
    pr_number: int | None = None,
    include_all: bool = False,
) -> str:
    """Return the query selecting a repository's work items.

    *build_number* restricts to one build (compared against the correlated
    build id); *pr_number* restricts to jobs queued from the pull request's
    merge ref.  Only failed work items are selected unless *include_all*.
    """
    validate_owner_repo(owner, repo)
    lines = ["Jobs", f'| where Repository == "{owner}/{repo}"']
    if pr_number is not None:
        lines.append(f'| where Branch == "{merge_ref(pr_number)}"')
    lines += [
        "| project-away Started, Finished",
        "| join kind=inner WorkItems on JobId",
        "| extend p = parse_json(Properties)",
        '| extend AzdoBuildId = toint(p["BuildId"])',
    ]
    if build_number is not None:
        lines.append(f"| where AzdoBuildId == {require_non_negative('build_number', build_number)}")
    lines += list(_CORRELATION_EXTENDS)
    if not include_all:
        lines.append(_FAILED_ONLY_FILTER)
    lines.append(_project_clause())
    return "\n".join(lines)


def build_work_item_lookup_query(job_id: int, work_item_id: int) -> str:
    """Return the query selecting exactly one work item by its identity."""
    require_non_negative("job_id", job_id)
    require_non_negative("work_item_id", work_item_id)
    lines = [
        "WorkItems",
        f"| where JobId == {job_id}",
        f"| where WorkItemId == {work_item_id}",
        "| join kind=inner Jobs on JobId",
        "| extend p = parse_json(Properties)",
        '| extend AzdoBuildId = toint(p["BuildId"])',
        *_CORRELATION_EXTENDS,
        _project_clause(),
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------


class _KustoWire(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")


class _KustoColumn(_KustoWire):
    column_name: str


class _KustoTable(_KustoWire):
    table_name: str | None = None
    columns: list[_KustoColumn]
    rows: list[list[Any]]


class _KustoResponse(_KustoWire):
    tables: list[_KustoTable]


class _WorkItemRow(_KustoWire):
    friendly_name: str
    execution_time: float
    queued_time: float
    azdo_build_id: int | None = None
    azdo_phase_name: str | None = None
    azdo_attempt: str | None = None
    machine_name: str
    exit_code: int
    console_uri: str
    job_id: int
    job_name: str
    queue_name: str
    finished: Timestamp
    work_item_id: int
    status: str


def parse_primary_table(payload: Any, *, operation: str) -> list[dict[str, Any]]:
    """Return the rows of the first result table as column-name dicts."""
    response = parse_model(_KustoResponse, payload, operation=operation)
    if not response.tables:
        raise DeserializationError(operation=operation, message="response has no result tables")
    table = response.tables[0]
    names = [column.column_name for column in table.columns]
    rows: list[dict[str, Any]] = []
    for index, row in enumerate(table.rows):
        if len(row) != len(names):
            raise DeserializationError(
                operation=operation,
                message=f"row {index} has {len(row)} values for {len(names)} columns",
            )
        rows.append(dict(zip(names, row, strict=True)))
    return rows


def _to_work_item(row: dict[str, Any], *, operation: str) -> WorkItem:
    raw = parse_model(_WorkItemRow, row, operation=operation)
    identity = f"work item {raw.job_id}/{raw.work_item_id}"

    if raw.azdo_build_id is None:
        raise CorrelationError(
            operation=operation, message=f"{identity} has no numeric BuildId property"
        )
    if not raw.azdo_phase_name:
        raise CorrelationError(
            operation=operation, message=f"{identity} has no System.PhaseName property"
        )
    try:
        attempt = int(raw.azdo_attempt or "")
    except ValueError as exc:
        raise CorrelationError(
            operation=operation,
            message=f"{identity} has non-numeric System.JobAttempt {raw.azdo_attempt!r}",
        ) from exc

    return WorkItem(
        friendly_name=raw.friendly_name,
        execution_time=int(raw.execution_time),
        queued_time=int(raw.queued_time),
        azdo_build_id=raw.azdo_build_id,
        azdo_phase_name=raw.azdo_phase_name,
        azdo_attempt=attempt,
        machine_name=raw.machine_name,
        exit_code=raw.exit_code,
        console_uri=raw.console_uri,
        job_id=raw.job_id,
        job_name=raw.job_name,
        queue_name=raw.queue_name,
        finished=raw.finished,
        work_item_id=raw.work_item_id,
        status=raw.status,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HelixClient:
    """Correlation queries against the Helix analytics cluster."""

    def __init__(
        self,
        config: HelixConfig,
        token: str,
        *,
        http: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        http = http or HttpConfig()
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "x-ms-app": CLIENT_APP_NAME,
        }
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                timeout=httpx.Timeout(http.timeout_seconds, connect=http.connect_timeout_seconds)
            )
        )

    @classmethod
    async def connect(
        cls,
        config: HelixConfig,
        credentials: TokenProvider,
        *,
        http: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> HelixClient:
        """Acquire a cluster token and return a ready client."""
        token = await credentials.get_token(KUSTO_AUDIENCE)
        logger.debug("Connected to %s/%s", config.cluster_url, config.database)
        return cls(config, token, http=http, http_client=http_client)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> HelixClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def work_items_for_build(
        self, owner: str, repo: str, build_number: int, include_all: bool = False
    ) -> list[WorkItem]:
        """Return the work items queued by one build of ``owner/repo``.

        *build_number* is the build's numeric id as recorded in the job
        properties.  Only failed work items (nonzero exit code) are returned
        unless *include_all* is set, which is expensive and rarely needed.
        """
        query = build_work_items_query(
            owner, repo, build_number=build_number, include_all=include_all
        )
        items = await self._query(query, target=f"{owner}/{repo} build {build_number}")
        return _failed_only(items, include_all)

    async def work_items_for_pull_request(
        self, owner: str, repo: str, pr_number: int, include_all: bool = False
    ) -> list[WorkItem]:
        """Return the work items queued from a pull request's merge ref."""
        query = build_work_items_query(owner, repo, pr_number=pr_number, include_all=include_all)
        items = await self._query(query, target=f"{owner}/{repo}#{pr_number}")
        return _failed_only(items, include_all)

    async def work_item(self, job_id: int, work_item_id: int) -> WorkItem:
        """Return exactly one work item.

        Raises
        ------
        WorkItemNotFoundError
            If no row matches.
        AmbiguousWorkItemError
            If more than one row matches.
        """
        query = build_work_item_lookup_query(job_id, work_item_id)
        items = await self._query(query, target=f"work item {job_id}/{work_item_id}")
        if not items:
            raise WorkItemNotFoundError(f"Work item {work_item_id} of job {job_id} not found")
        if len(items) > 1:
            raise AmbiguousWorkItemError(
                f"Work item {work_item_id} of job {job_id} matched {len(items)} rows"
            )
        return items[0]

    async def _query(self, query: str, *, target: str) -> list[WorkItem]:
        operation = "work item query"
        url = self._config.cluster_url + QUERY_PATH
        headers = {**self._headers, "x-ms-client-request-id": f"{CLIENT_APP_NAME};{uuid.uuid4()}"}
        logger.debug("Querying %s for %s:\n%s", self._config.database, target, query)
        try:
            response = await self._http_client.post(
                url, json={"db": self._config.database, "csl": query}, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Analytics cluster %s unreachable: %s. %s",
                self._config.cluster_url,
                exc,
                AnalyticsUnreachableError.HINT,
            )
            raise AnalyticsUnreachableError(f"{operation} for {target} failed: {exc}") from exc

        ensure_success(response, operation=operation, target=target)
        payload = decode_json(response, operation=operation)
        rows = parse_primary_table(payload, operation=operation)
        items = [_to_work_item(row, operation=operation) for row in rows]
        logger.debug("Fetched %d work item(s) for %s", len(items), target)
        return items


def _failed_only(items: list[WorkItem], include_all: bool) -> list[WorkItem]:
    if include_all:
        return items
    failed = [item for item in items if item.exit_code != 0]
    if len(failed) != len(items):
        logger.warning(
            "Dropped %d succeeded work item(s) from a failed-only query", len(items) - len(failed)
        )
    return failed

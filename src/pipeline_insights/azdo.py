"""Build-service adapter for the Azure DevOps builds REST API.

Translates builds, timelines, test results and artifacts into the domain
model.  Construction is two-phase: build an :class:`AzdoConfig`, then
``await AzdoClient.connect(config, credentials)`` to exchange a token.  The
plain constructor performs no I/O, so tests can pass a fake token and an
``httpx.AsyncClient`` backed by ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from pathlib import Path
from typing import Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from pipeline_insights._http import decode_json, ensure_success, parse_model
from pipeline_insights.config import AzdoConfig, HttpConfig
from pipeline_insights.credentials import AZDO_AUDIENCE, TokenProvider
from pipeline_insights.errors import ArtifactNotFoundError, TransportError
from pipeline_insights.identifiers import (
    merge_ref,
    parse_repository,
    require_non_negative,
    require_positive,
)
from pipeline_insights.models import (
    Artifact,
    Build,
    TestFailure,
    Timeline,
    TimelineIssue,
    TimelineRecord,
    Timestamp,
)

logger = logging.getLogger(__name__)

REPOSITORY_TYPE = "GitHub"
FAILED_OUTCOME = "Failed"
UNKNOWN_DEFINITION = "unknown"
_DOWNLOAD_CHUNK_SIZE = 64 * 1024

T = TypeVar("T")


class BuildReasonFilter(enum.StrEnum):
    """User-facing build trigger classification."""

    ALL = "all"
    PR = "pr"
    CI = "ci"

    @property
    def reason_filter(self) -> str | None:
        """The backend ``reasonFilter`` value, or ``None`` for no filtering."""
        return _REASON_FILTERS[self]

    @classmethod
    def parse(cls, value: str | None) -> BuildReasonFilter:
        """Map free-form input onto a filter; anything unrecognised means all builds."""
        try:
            return cls((value or "all").strip().lower())
        except ValueError:
            return cls.ALL


_REASON_FILTERS: dict[BuildReasonFilter, str | None] = {
    BuildReasonFilter.ALL: None,
    BuildReasonFilter.PR: "pullRequest",
    BuildReasonFilter.CI: "individualCI,batchedCI",
}


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _ListResponse(_Wire, Generic[T]):
    count: int = 0
    value: list[T]


class _DefinitionRef(_Wire):
    name: str


class _BuildWire(_Wire):
    id: int
    build_number: str
    status: str
    result: str | None = None
    source_branch: str
    definition: _DefinitionRef | None = None
    finish_time: Timestamp | None = None


class _TestRunWire(_Wire):
    id: int
    name: str


class _TestResultWire(_Wire):
    test_case_title: str
    outcome: str
    error_message: str | None = None
    stack_trace: str | None = None


class _IssueWire(_Wire):
    type: str
    message: str
    category: str | None = None


class _LogReference(_Wire):
    url: str | None = None


class _TimelineRecordWire(_Wire):
    id: str
    parent_id: str | None = None
    name: str
    type: str
    order: int | None = None
    state: str | None = None
    result: str | None = None
    error_count: int | None = None
    warning_count: int | None = None
    start_time: Timestamp | None = None
    finish_time: Timestamp | None = None
    worker_name: str | None = None
    issues: list[_IssueWire] | None = None
    log: _LogReference | None = None


class _TimelineWire(_Wire):
    records: list[_TimelineRecordWire] | None = None


class _ArtifactResource(_Wire):
    download_url: str | None = None
    type: str | None = None


class _ArtifactWire(_Wire):
    id: int
    name: str
    resource: _ArtifactResource | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AzdoClient:
    """Read-only client for one ``(organization, project)`` pair."""

    def __init__(
        self,
        config: AzdoConfig,
        token: str,
        *,
        http: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http = http or HttpConfig()
        self._headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self._http.timeout_seconds, connect=self._http.connect_timeout_seconds
                ),
                follow_redirects=True,
            )
        )

    @classmethod
    async def connect(
        cls,
        config: AzdoConfig,
        credentials: TokenProvider,
        *,
        http: HttpConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> AzdoClient:
        """Acquire a token for the builds API and return a ready client."""
        token = await credentials.get_token(AZDO_AUDIENCE)
        logger.debug("Connected to %s", config.base_url)
        return cls(config, token, http=http, http_client=http_client)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> AzdoClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    async def list_recent_builds(
        self, definition_id: int | None = None, limit: int = 10
    ) -> list[Build]:
        """Return up to *limit* builds, newest first, optionally for one definition."""
        params: dict[str, Any] = {"$top": require_positive("limit", limit)}
        target = self._config.project
        if definition_id is not None:
            params["definitions"] = require_non_negative("definition_id", definition_id)
            target = f"definition {definition_id}"
        return await self._list_builds(params, operation="list builds", target=target)

    async def list_builds_for_repository(
        self,
        repository: str,
        limit: int = 10,
        reason_filter: str | None = None,
    ) -> list[Build]:
        """Return builds for a GitHub ``owner/repo``.

        *reason_filter* is passed through as the backend's ``reasonFilter``:
        ``None`` for all builds, ``"pullRequest"`` or ``"individualCI,batchedCI"``.
        """
        owner, name = parse_repository(repository)
        params: dict[str, Any] = {
            "$top": require_positive("limit", limit),
            "repositoryId": f"{owner}/{name}",
            "repositoryType": REPOSITORY_TYPE,
        }
        if reason_filter is not None:
            params["reasonFilter"] = reason_filter
        return await self._list_builds(params, operation="list builds", target=repository)

    async def list_builds_for_pull_request(
        self, repository: str, pr_number: int, limit: int = 10
    ) -> list[Build]:
        """Return builds of a pull request's merge ref."""
        owner, name = parse_repository(repository)
        params: dict[str, Any] = {
            "$top": require_positive("limit", limit),
            "branchName": merge_ref(pr_number),
            "repositoryId": f"{owner}/{name}",
            "repositoryType": REPOSITORY_TYPE,
        }
        return await self._list_builds(
            params, operation="list builds", target=f"{repository}#{pr_number}"
        )

    async def _list_builds(
        self, params: dict[str, Any], *, operation: str, target: str
    ) -> list[Build]:
        payload = await self._get_json(
            "_apis/build/builds", params, operation=operation, target=target
        )
        response = parse_model(_ListResponse[_BuildWire], payload, operation="builds")
        builds = [self._to_build(raw) for raw in response.value]
        logger.debug("Fetched %d build(s) for %s", len(builds), target)
        return builds

    def _to_build(self, raw: _BuildWire) -> Build:
        return Build(
            id=raw.id,
            build_number=raw.build_number,
            status=raw.status,
            result=raw.result,
            uri=self._config.build_web_uri(raw.id),
            source_branch=raw.source_branch,
            definition_name=raw.definition.name if raw.definition else UNKNOWN_DEFINITION,
            finish_time=raw.finish_time,
        )

    # ------------------------------------------------------------------
    # Tests
    # ------------------------------------------------------------------

    async def get_test_failures(self, build_id: int) -> list[TestFailure]:
        """Return the failing test results of every test run of a build.

        One request lists the runs, then one request per run fetches its
        failed results.  Per-run requests run concurrently up to the
        configured fan-out limit; any failure fails the whole call.
        """
        require_non_negative("build_id", build_id)
        target = f"build {build_id}"
        payload = await self._get_json(
            "_apis/test/runs",
            {"buildUri": f"vstfs:///Build/Build/{build_id}"},
            operation="list test runs",
            target=target,
        )
        runs = parse_model(_ListResponse[_TestRunWire], payload, operation="test runs").value
        if not runs:
            return []

        semaphore = asyncio.Semaphore(self._http.max_concurrency)

        async def _failures_for(run: _TestRunWire) -> list[TestFailure]:
            async with semaphore:
                results_payload = await self._get_json(
                    f"_apis/test/Runs/{run.id}/results",
                    {"outcomes": FAILED_OUTCOME},
                    operation="list test results",
                    target=f"test run {run.id}",
                )
            results = parse_model(
                _ListResponse[_TestResultWire], results_payload, operation="test results"
            ).value
            return [
                TestFailure(
                    test_case_title=result.test_case_title,
                    outcome=result.outcome,
                    error_message=result.error_message,
                    stack_trace=result.stack_trace,
                    test_run_id=run.id,
                    test_run_name=run.name,
                )
                for result in results
            ]

        per_run = await asyncio.gather(*(_failures_for(run) for run in runs))
        failures = [failure for run_failures in per_run for failure in run_failures]
        logger.debug(
            "Build %s: %d failure(s) across %d run(s)", build_id, len(failures), len(runs)
        )
        return failures

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    async def get_timeline(self, build_id: int) -> Timeline:
        """Return the raw timeline records of a build; tree shape is derived on demand."""
        require_non_negative("build_id", build_id)
        payload = await self._get_json(
            f"_apis/build/builds/{build_id}/timeline",
            {},
            operation="get timeline",
            target=f"build {build_id}",
        )
        raw = parse_model(_TimelineWire, payload, operation="timeline")
        return Timeline(records=tuple(_to_record(record) for record in raw.records or []))

    async def get_jobs(self, build_id: int) -> list[TimelineRecord]:
        """Return the ``Job`` records of a build's timeline, sorted by order."""
        timeline = await self.get_timeline(build_id)
        return timeline.get_jobs()

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def get_artifacts(self, build_id: int) -> list[Artifact]:
        require_non_negative("build_id", build_id)
        payload = await self._get_json(
            f"_apis/build/builds/{build_id}/artifacts",
            {},
            operation="list artifacts",
            target=f"build {build_id}",
        )
        raw = parse_model(_ListResponse[_ArtifactWire], payload, operation="artifacts")
        return [
            Artifact(
                id=artifact.id,
                name=artifact.name,
                download_url=artifact.resource.download_url if artifact.resource else None,
                resource_type=artifact.resource.type if artifact.resource else None,
            )
            for artifact in raw.value
        ]

    async def download_artifact(
        self, build_id: int, artifact_name: str, destination: str | Path
    ) -> Path:
        """Stream the named artifact to *destination* and return the written path.

        Raises
        ------
        ArtifactNotFoundError
            If no artifact has exactly that name, or the match has no download URL.
            No download request is made in either case.
        """
        artifacts = await self.get_artifacts(build_id)
        artifact = next((a for a in artifacts if a.name == artifact_name), None)
        if artifact is None:
            raise ArtifactNotFoundError(
                f"Artifact {artifact_name!r} not found for build {build_id}"
            )
        if not artifact.download_url:
            raise ArtifactNotFoundError(f"Artifact {artifact_name!r} has no download URL")

        path = Path(destination)
        target = f"artifact {artifact_name!r} of build {build_id}"
        # Stream into a sibling file; the destination is only touched on success.
        partial = path.with_name(f".{path.name}.partial")
        try:
            async with self._http_client.stream(
                "GET", artifact.download_url, headers=self._headers
            ) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    await response.aread()
                    ensure_success(response, operation="download artifact", target=target)
                with partial.open("wb") as fh:
                    async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
            partial.replace(path)
        except httpx.HTTPError as exc:
            raise TransportError(f"download artifact request for {target} failed: {exc}") from exc
        finally:
            partial.unlink(missing_ok=True)

        logger.info("Downloaded %s to %s", target, path)
        return path

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get_json(
        self, path: str, params: dict[str, Any], *, operation: str, target: str
    ) -> Any:
        url = self._config.base_url + path
        query = {"api-version": self._config.api_version, **params}
        try:
            response = await self._http_client.get(url, params=query, headers=self._headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"{operation} request for {target} failed: {exc}") from exc
        ensure_success(response, operation=operation, target=target)
        return decode_json(response, operation=operation)


def _to_record(raw: _TimelineRecordWire) -> TimelineRecord:
    return TimelineRecord(
        id=raw.id,
        parent_id=raw.parent_id,
        name=raw.name,
        record_type=raw.type,
        order=raw.order or 0,
        state=raw.state,
        result=raw.result,
        error_count=raw.error_count or 0,
        warning_count=raw.warning_count or 0,
        start_time=raw.start_time,
        finish_time=raw.finish_time,
        issues=tuple(
            TimelineIssue(type=issue.type, message=issue.message, category=issue.category)
            for issue in raw.issues or []
        ),
        worker_name=raw.worker_name,
        log_url=raw.log.url if raw.log else None,
    )

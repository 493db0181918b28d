"""Query facade over both backends.

The build service and the analytics service are modelled as two independent
capability protocols.  :class:`PipelineQueries` composes one of each (either
may be absent) with a :class:`ConsoleFetcher`; it is the only surface the
CLI and the MCP server talk to.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pipeline_insights.azdo import AzdoClient
from pipeline_insights.config import PipelineSettings
from pipeline_insights.console import ConsoleFetcher
from pipeline_insights.credentials import TokenProvider
from pipeline_insights.errors import BackendNotConfiguredError
from pipeline_insights.helix import HelixClient
from pipeline_insights.models import (
    Artifact,
    Build,
    TestFailure,
    Timeline,
    TimelineRecord,
    WorkItem,
    WorkItemConsole,
)

logger = logging.getLogger(__name__)


class BuildQueries(Protocol):
    """Read operations of the build-orchestration backend."""

    async def list_recent_builds(
        self, definition_id: int | None = None, limit: int = 10
    ) -> list[Build]: ...

    async def list_builds_for_repository(
        self, repository: str, limit: int = 10, reason_filter: str | None = None
    ) -> list[Build]: ...

    async def list_builds_for_pull_request(
        self, repository: str, pr_number: int, limit: int = 10
    ) -> list[Build]: ...

    async def get_test_failures(self, build_id: int) -> list[TestFailure]: ...

    async def get_timeline(self, build_id: int) -> Timeline: ...

    async def get_jobs(self, build_id: int) -> list[TimelineRecord]: ...

    async def get_artifacts(self, build_id: int) -> list[Artifact]: ...

    async def download_artifact(
        self, build_id: int, artifact_name: str, destination: str | Path
    ) -> Path: ...

    async def aclose(self) -> None: ...


class AnalyticsQueries(Protocol):
    """Correlation queries of the analytics backend."""

    async def work_items_for_build(
        self, owner: str, repo: str, build_number: int, include_all: bool = False
    ) -> list[WorkItem]: ...

    async def work_items_for_pull_request(
        self, owner: str, repo: str, pr_number: int, include_all: bool = False
    ) -> list[WorkItem]: ...

    async def work_item(self, job_id: int, work_item_id: int) -> WorkItem: ...

    async def aclose(self) -> None: ...


class PipelineQueries:
    """The stable query surface consumed by the CLI and the MCP server."""

    def __init__(
        self,
        *,
        builds: BuildQueries | None = None,
        analytics: AnalyticsQueries | None = None,
        consoles: ConsoleFetcher | None = None,
    ) -> None:
        self._builds = builds
        self._analytics = analytics
        self._consoles = consoles or ConsoleFetcher()

    @classmethod
    async def open(
        cls,
        settings: PipelineSettings,
        credentials: TokenProvider,
        *,
        builds: bool = True,
        analytics: bool = True,
    ) -> PipelineQueries:
        """Connect the requested backends; each connect performs one token exchange."""
        build_client = (
            await AzdoClient.connect(settings.azdo, credentials, http=settings.http)
            if builds
            else None
        )
        try:
            analytics_client = (
                await HelixClient.connect(settings.helix, credentials, http=settings.http)
                if analytics
                else None
            )
        except BaseException:
            if build_client is not None:
                await build_client.aclose()
            raise
        consoles = ConsoleFetcher(max_concurrency=settings.http.max_concurrency, http=settings.http)
        return cls(builds=build_client, analytics=analytics_client, consoles=consoles)

    async def aclose(self) -> None:
        for backend in (self._builds, self._analytics):
            if backend is not None:
                await backend.aclose()
        await self._consoles.aclose()

    async def __aenter__(self) -> PipelineQueries:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def builds(self) -> BuildQueries:
        if self._builds is None:
            raise BackendNotConfiguredError("The build service backend is not configured")
        return self._builds

    @property
    def analytics(self) -> AnalyticsQueries:
        if self._analytics is None:
            raise BackendNotConfiguredError("The analytics backend is not configured")
        return self._analytics

    # ------------------------------------------------------------------
    # Build service
    # ------------------------------------------------------------------

    async def list_recent_builds(
        self, definition_id: int | None = None, limit: int = 10
    ) -> list[Build]:
        return await self.builds.list_recent_builds(definition_id, limit)

    async def list_builds_for_repository(
        self, repository: str, limit: int = 10, reason_filter: str | None = None
    ) -> list[Build]:
        return await self.builds.list_builds_for_repository(repository, limit, reason_filter)

    async def list_builds_for_pull_request(
        self, repository: str, pr_number: int, limit: int = 10
    ) -> list[Build]:
        return await self.builds.list_builds_for_pull_request(repository, pr_number, limit)

    async def get_test_failures(self, build_id: int) -> list[TestFailure]:
        return await self.builds.get_test_failures(build_id)

    async def get_timeline(self, build_id: int) -> Timeline:
        return await self.builds.get_timeline(build_id)

    async def get_jobs(self, build_id: int) -> list[TimelineRecord]:
        return await self.builds.get_jobs(build_id)

    async def get_artifacts(self, build_id: int) -> list[Artifact]:
        return await self.builds.get_artifacts(build_id)

    async def download_artifact(
        self, build_id: int, artifact_name: str, destination: str | Path
    ) -> Path:
        return await self.builds.download_artifact(build_id, artifact_name, destination)

    # ------------------------------------------------------------------
    # Analytics service
    # ------------------------------------------------------------------

    async def work_items_for_build(
        self, owner: str, repo: str, build_number: int, include_all: bool = False
    ) -> list[WorkItem]:
        return await self.analytics.work_items_for_build(owner, repo, build_number, include_all)

    async def work_items_for_pull_request(
        self, owner: str, repo: str, pr_number: int, include_all: bool = False
    ) -> list[WorkItem]:
        return await self.analytics.work_items_for_pull_request(owner, repo, pr_number, include_all)

    async def work_item(self, job_id: int, work_item_id: int) -> WorkItem:
        return await self.analytics.work_item(job_id, work_item_id)

    # ------------------------------------------------------------------
    # Consoles
    # ------------------------------------------------------------------

    async def fetch_console(self, work_item: WorkItem) -> WorkItemConsole:
        return await self._consoles.fetch_console(work_item)

    async def fetch_consoles(self, work_items: Sequence[WorkItem]) -> list[WorkItemConsole]:
        return await self._consoles.fetch_consoles(work_items)

    async def work_item_console(self, job_id: int, work_item_id: int) -> WorkItemConsole:
        """Resolve one work item, then fetch its console."""
        work_item = await self.work_item(job_id, work_item_id)
        return await self._consoles.fetch_console(work_item)

    async def failed_work_item_consoles(
        self, owner: str, repo: str, build_number: int
    ) -> list[WorkItemConsole]:
        """Fetch the consoles of every failed work item of a build."""
        work_items = await self.work_items_for_build(owner, repo, build_number)
        logger.info(
            "Fetching %d failed work item console(s) for %s/%s build %s",
            len(work_items),
            owner,
            repo,
            build_number,
        )
        return await self._consoles.fetch_consoles(work_items)

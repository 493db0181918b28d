"""MCP tool server exposing the query facade to tool-calling agents.

Every tool is a thin shim over :class:`PipelineQueries` that returns the
same indented JSON document the CLI prints.  Tools are registered as
closures capturing the facade, each wrapped in a ``tool_span``.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastmcp import FastMCP
from pydantic import Field

from pipeline_insights.azdo import BuildReasonFilter
from pipeline_insights.config import PipelineSettings
from pipeline_insights.core.telemetry import init_telemetry, tool_span
from pipeline_insights.credentials import TokenProvider
from pipeline_insights.models import to_json
from pipeline_insights.queries import PipelineQueries

logger = logging.getLogger(__name__)

SERVER_NAME = "pipeline"

_REPOSITORY = Field(description="The GitHub repository in owner/repo format (e.g. dotnet/roslyn)")
_OWNER = Field(description="The repository owner (e.g. dotnet)")
_REPO = Field(description="The repository name (e.g. roslyn)")
_BUILD_ID = Field(description="The AzDO build ID")
_TOP = Field(description="Maximum number of builds to return (default 10)")
_INCLUDE_ALL = Field(
    description=(
        "If true, include all work items including succeeded ones. "
        "Expensive; the default returns only failed items."
    )
)


def build_server(queries: PipelineQueries) -> FastMCP:
    """Create a FastMCP server whose tools read through *queries*."""
    mcp = FastMCP(SERVER_NAME)

    # --- Build service ---

    @mcp.tool()
    @tool_span("azdo_recent_builds")
    async def azdo_recent_builds(
        definition_id: Annotated[
            int | None, Field(description="Optional pipeline definition ID to filter by")
        ] = None,
        top: Annotated[int, _TOP] = 10,
    ) -> str:
        """Get recent AzDO builds, optionally filtered by pipeline definition ID."""
        return to_json(await queries.list_recent_builds(definition_id, top))

    @mcp.tool()
    @tool_span("azdo_builds_for_repo")
    async def azdo_builds_for_repo(
        repository: Annotated[str, _REPOSITORY],
        top: Annotated[int, _TOP] = 10,
        filter: Annotated[  # noqa: A002
            str,
            Field(
                description=(
                    "Filter builds: 'pr' for pull request builds only, "
                    "'ci' for post-merge builds only, 'all' for both (default)"
                )
            ),
        ] = "all",
    ) -> str:
        """Get AzDO builds for a GitHub repository. Returns both PR and CI builds by default."""
        reason = BuildReasonFilter.parse(filter).reason_filter
        return to_json(await queries.list_builds_for_repository(repository, top, reason))

    @mcp.tool()
    @tool_span("azdo_pr_builds")
    async def azdo_pr_builds(
        repository: Annotated[str, _REPOSITORY],
        pr_number: Annotated[int, Field(description="The pull request number")],
        top: Annotated[int, _TOP] = 10,
    ) -> str:
        """Get AzDO builds for a specific pull request."""
        return to_json(await queries.list_builds_for_pull_request(repository, pr_number, top))

    @mcp.tool()
    @tool_span("azdo_test_failures")
    async def azdo_test_failures(build_id: Annotated[int, _BUILD_ID]) -> str:
        """Get test failures for an AzDO build."""
        return to_json(await queries.get_test_failures(build_id))

    @mcp.tool()
    @tool_span("azdo_timeline")
    async def azdo_timeline(build_id: Annotated[int, _BUILD_ID]) -> str:
        """Get the timeline (all records) for an AzDO build."""
        return to_json(await queries.get_timeline(build_id))

    @mcp.tool()
    @tool_span("azdo_jobs")
    async def azdo_jobs(build_id: Annotated[int, _BUILD_ID]) -> str:
        """Get job records from an AzDO build timeline."""
        return to_json(await queries.get_jobs(build_id))

    @mcp.tool()
    @tool_span("azdo_artifacts")
    async def azdo_artifacts(build_id: Annotated[int, _BUILD_ID]) -> str:
        """Get build artifacts for an AzDO build."""
        return to_json(await queries.get_artifacts(build_id))

    # --- Analytics service ---

    @mcp.tool()
    @tool_span("helix_work_items_for_build")
    async def helix_work_items_for_build(
        owner: Annotated[str, _OWNER],
        repository: Annotated[str, _REPO],
        build_number: Annotated[int, Field(description="The AzDO build number")],
        include_all: Annotated[bool, _INCLUDE_ALL] = False,
    ) -> str:
        """Get Helix work items for an AzDO build number."""
        return to_json(
            await queries.work_items_for_build(owner, repository, build_number, include_all)
        )

    @mcp.tool()
    @tool_span("helix_work_items_for_pr")
    async def helix_work_items_for_pr(
        owner: Annotated[str, _OWNER],
        repository: Annotated[str, _REPO],
        pr_number: Annotated[int, Field(description="The pull request number")],
        include_all: Annotated[bool, _INCLUDE_ALL] = False,
    ) -> str:
        """Get Helix work items for a pull request."""
        return to_json(
            await queries.work_items_for_pull_request(owner, repository, pr_number, include_all)
        )

    @mcp.tool()
    @tool_span("helix_work_item")
    async def helix_work_item(
        job_id: Annotated[int, Field(description="The Helix job ID")],
        work_item_id: Annotated[int, Field(description="The Helix work item ID")],
    ) -> str:
        """Get a single Helix work item by job ID and work item ID."""
        return to_json(await queries.work_item(job_id, work_item_id))

    @mcp.tool()
    @tool_span("helix_console")
    async def helix_console(
        job_id: Annotated[int, Field(description="The Helix job ID")],
        work_item_id: Annotated[int, Field(description="The Helix work item ID")],
    ) -> str:
        """Get the console log of a Helix work item."""
        return to_json(await queries.work_item_console(job_id, work_item_id))

    return mcp


async def serve(settings: PipelineSettings, credentials: TokenProvider) -> None:
    """Connect both backends and serve the tools over stdio until the client disconnects.

    *credentials* is closed on exit when it supports ``aclose``.
    """
    init_telemetry()
    try:
        queries = await PipelineQueries.open(settings, credentials)
        try:
            server = build_server(queries)
            logger.info(
                "Serving MCP tools for %s/%s over stdio",
                settings.azdo.organization,
                settings.azdo.project,
            )
            await server.run_async(transport="stdio")
        finally:
            await queries.aclose()
    finally:
        aclose = getattr(credentials, "aclose", None)
        if aclose is not None:
            await aclose()

"""Command-line interface: query builds and Helix work items."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import click

from pipeline_insights import __version__
from pipeline_insights.azdo import BuildReasonFilter
from pipeline_insights.config import ConfigError, PipelineSettings, load_config
from pipeline_insights.core.logging import configure_logging, set_command_context
from pipeline_insights.credentials import (
    AzureIdentityTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from pipeline_insights.errors import InvalidArgumentError, PipelineError
from pipeline_insights.identifiers import parse_repository
from pipeline_insights.models import Timeline, to_json
from pipeline_insights.queries import PipelineQueries
from pipeline_insights.timeline import orphaned_records, walk

logger = logging.getLogger(__name__)

T = TypeVar("T")

QueriesOpener = Callable[[PipelineSettings, TokenProvider, bool, bool], Awaitable[PipelineQueries]]


def make_credentials(settings: PipelineSettings) -> TokenProvider:
    """Use the configured static token, else the Azure default credential chain."""
    if settings.auth.token:
        return StaticTokenProvider(settings.auth.token)
    return AzureIdentityTokenProvider()


async def _open_queries(
    settings: PipelineSettings, credentials: TokenProvider, builds: bool, analytics: bool
) -> PipelineQueries:
    return await PipelineQueries.open(settings, credentials, builds=builds, analytics=analytics)


@dataclass
class CliState:
    """Per-invocation state carried on the click context."""

    settings: PipelineSettings = field(default_factory=PipelineSettings)
    open_queries: QueriesOpener = _open_queries
    make_credentials: Callable[[PipelineSettings], TokenProvider] = make_credentials


def _run(
    ctx: click.Context,
    operation: Callable[[PipelineQueries], Awaitable[T]],
    *,
    builds: bool = False,
    analytics: bool = False,
    org: str | None = None,
    project: str | None = None,
) -> T:
    """Open the needed backends, run *operation*, and map failures to click errors."""
    state: CliState = ctx.obj
    settings = state.settings.with_azdo(org, project)
    set_command_context(ctx.command_path)

    async def _main() -> T:
        credentials = state.make_credentials(settings)
        try:
            queries = await state.open_queries(settings, credentials, builds, analytics)
            async with queries:
                return await operation(queries)
        finally:
            aclose = getattr(credentials, "aclose", None)
            if aclose is not None:
                await aclose()

    try:
        return asyncio.run(_main())
    except InvalidArgumentError as exc:
        raise click.BadParameter(str(exc)) from exc
    except PipelineError as exc:
        logger.debug("%s failed", ctx.command_path, exc_info=True)
        raise click.ClickException(str(exc)) from exc


def _echo(result: Any) -> None:
    click.echo(to_json(result))


def _repository_callback(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> tuple[str, str] | None:
    if value is None:
        return None
    try:
        return parse_repository(value)
    except InvalidArgumentError as exc:
        raise click.BadParameter(str(exc), ctx=ctx, param=param) from exc


_org_option = click.option("--org", default=None, help="AzDO organization (default from config)")
_project_option = click.option("--project", default=None, help="AzDO project (default from config)")
_build_option = click.option(
    "--build", "build_id", type=click.IntRange(min=0), required=True, help="AzDO build ID"
)
_top_option = click.option(
    "--top", type=click.IntRange(min=1), default=10, show_default=True, help="Maximum builds"
)
_repo_option = click.option(
    "--repo",
    "repository",
    required=True,
    callback=_repository_callback,
    help="GitHub repository in owner/repo format (e.g. dotnet/roslyn)",
)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to pipeline.toml (default: $PIPELINE_CONFIG or ./pipeline.toml)",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option(
    "--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format"
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Query Azure DevOps builds and Helix work items."""
    if ctx.obj is None:
        ctx.obj = CliState()
    try:
        ctx.obj.settings = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=log_level or ctx.obj.settings.logging.level,
        fmt=log_format or ctx.obj.settings.logging.format,
    )


# ---------------------------------------------------------------------------
# azdo
# ---------------------------------------------------------------------------


@cli.group()
def azdo() -> None:
    """Builds, tests, timelines and artifacts from Azure DevOps."""


@azdo.command()
@click.option("--definition", "definition_id", type=click.IntRange(min=0), default=None)
@_top_option
@_org_option
@_project_option
@click.pass_context
def builds(
    ctx: click.Context, definition_id: int | None, top: int, org: str | None, project: str | None
) -> None:
    """List recent builds, optionally for one pipeline definition."""
    result = _run(
        ctx,
        lambda q: q.list_recent_builds(definition_id, top),
        builds=True,
        org=org,
        project=project,
    )
    _echo(result)


@azdo.command("repo-builds")
@_repo_option
@_top_option
@click.option(
    "--filter",
    "reason",
    type=click.Choice([choice.value for choice in BuildReasonFilter]),
    default=BuildReasonFilter.ALL.value,
    show_default=True,
    help="'pr' for pull request builds, 'ci' for post-merge builds",
)
@_org_option
@_project_option
@click.pass_context
def repo_builds(
    ctx: click.Context,
    repository: tuple[str, str],
    top: int,
    reason: str,
    org: str | None,
    project: str | None,
) -> None:
    """List builds of a GitHub repository."""
    reason_filter = BuildReasonFilter(reason).reason_filter
    result = _run(
        ctx,
        lambda q: q.list_builds_for_repository("/".join(repository), top, reason_filter),
        builds=True,
        org=org,
        project=project,
    )
    _echo(result)


@azdo.command("pr-builds")
@_repo_option
@click.option("--pr", "pr_number", type=click.IntRange(min=0), required=True)
@_top_option
@_org_option
@_project_option
@click.pass_context
def pr_builds(
    ctx: click.Context,
    repository: tuple[str, str],
    pr_number: int,
    top: int,
    org: str | None,
    project: str | None,
) -> None:
    """List builds of a pull request."""
    result = _run(
        ctx,
        lambda q: q.list_builds_for_pull_request("/".join(repository), pr_number, top),
        builds=True,
        org=org,
        project=project,
    )
    _echo(result)


@azdo.command()
@_build_option
@_org_option
@_project_option
@click.pass_context
def tests(ctx: click.Context, build_id: int, org: str | None, project: str | None) -> None:
    """List failed test results of a build."""
    _echo(_run(ctx, lambda q: q.get_test_failures(build_id), builds=True, org=org, project=project))


@azdo.command()
@_build_option
@click.option("--tree", is_flag=True, help="Print an indented tree instead of JSON")
@_org_option
@_project_option
@click.pass_context
def timeline(
    ctx: click.Context, build_id: int, tree: bool, org: str | None, project: str | None
) -> None:
    """Show the timeline records of a build."""
    result = _run(ctx, lambda q: q.get_timeline(build_id), builds=True, org=org, project=project)
    if tree:
        click.echo(render_tree(result))
    else:
        _echo(result)


def render_tree(timeline: Timeline) -> str:
    """Render a timeline as an indented outline, one record per line."""
    lines = []
    for depth, record in walk(timeline.records):
        status = record.result or record.state or "pending"
        lines.append(f"{'  ' * depth}{record.record_type}: {record.name} [{status}]")
    orphans = orphaned_records(timeline.records)
    if orphans:
        logger.warning("%d timeline record(s) reference a missing parent", len(orphans))
    return "\n".join(lines)


@azdo.command()
@_build_option
@_org_option
@_project_option
@click.pass_context
def jobs(ctx: click.Context, build_id: int, org: str | None, project: str | None) -> None:
    """List the Job records of a build, in timeline order."""
    _echo(_run(ctx, lambda q: q.get_jobs(build_id), builds=True, org=org, project=project))


@azdo.command()
@_build_option
@_org_option
@_project_option
@click.pass_context
def artifacts(ctx: click.Context, build_id: int, org: str | None, project: str | None) -> None:
    """List the artifacts of a build."""
    _echo(_run(ctx, lambda q: q.get_artifacts(build_id), builds=True, org=org, project=project))


@azdo.command()
@_build_option
@click.option("--artifact", "artifact_name", required=True, help="Exact artifact name")
@click.option(
    "--output", "output_path", type=click.Path(dir_okay=False, path_type=Path), required=True
)
@_org_option
@_project_option
@click.pass_context
def download(
    ctx: click.Context,
    build_id: int,
    artifact_name: str,
    output_path: Path,
    org: str | None,
    project: str | None,
) -> None:
    """Download a build artifact."""
    path = _run(
        ctx,
        lambda q: q.download_artifact(build_id, artifact_name, output_path),
        builds=True,
        org=org,
        project=project,
    )
    click.echo(f"Artifact '{artifact_name}' downloaded to {path}")


# ---------------------------------------------------------------------------
# helix
# ---------------------------------------------------------------------------


@cli.group()
def helix() -> None:
    """Helix work items and their console logs."""


@helix.command("work-items")
@_repo_option
@click.option("--build", "build_number", type=click.IntRange(min=0), default=None)
@click.option("--pr", "pr_number", type=click.IntRange(min=0), default=None)
@click.option(
    "--include-all",
    is_flag=True,
    help="Include succeeded work items too (expensive; failed only by default)",
)
@click.pass_context
def work_items(
    ctx: click.Context,
    repository: tuple[str, str],
    build_number: int | None,
    pr_number: int | None,
    include_all: bool,
) -> None:
    """List work items of a build or a pull request."""
    if (build_number is None) == (pr_number is None):
        raise click.UsageError("Exactly one of --build or --pr is required")
    owner, repo = repository
    if pr_number is not None:
        result = _run(
            ctx,
            lambda q: q.work_items_for_pull_request(owner, repo, pr_number, include_all),
            analytics=True,
        )
    else:
        result = _run(
            ctx,
            lambda q: q.work_items_for_build(owner, repo, build_number, include_all),
            analytics=True,
        )
    _echo(result)


@helix.command("work-item")
@click.option("--job-id", type=click.IntRange(min=0), required=True)
@click.option("--work-item-id", type=click.IntRange(min=0), required=True)
@click.pass_context
def work_item(ctx: click.Context, job_id: int, work_item_id: int) -> None:
    """Show one work item."""
    _echo(_run(ctx, lambda q: q.work_item(job_id, work_item_id), analytics=True))


@helix.command()
@click.option("--job-id", type=click.IntRange(min=0), default=None)
@click.option("--work-item-id", type=click.IntRange(min=0), default=None)
@click.option("--repo", "repository", default=None, callback=_repository_callback)
@click.option("--build", "build_number", type=click.IntRange(min=0), default=None)
@click.pass_context
def console(
    ctx: click.Context,
    job_id: int | None,
    work_item_id: int | None,
    repository: tuple[str, str] | None,
    build_number: int | None,
) -> None:
    """Fetch console logs of one work item, or of every failed work item of a build."""
    if job_id is not None and work_item_id is not None:
        _echo(_run(ctx, lambda q: q.work_item_console(job_id, work_item_id), analytics=True))
        return
    if repository is not None and build_number is not None:
        owner, repo = repository
        consoles = _run(
            ctx, lambda q: q.failed_work_item_consoles(owner, repo, build_number), analytics=True
        )
        _echo(consoles)
        return
    raise click.UsageError("Pass either --job-id and --work-item-id, or --repo and --build")


# ---------------------------------------------------------------------------
# mcp
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def mcp(ctx: click.Context) -> None:
    """Serve the query tools over MCP (stdio)."""
    from pipeline_insights.mcp_server import serve

    state: CliState = ctx.obj
    set_command_context("mcp")
    try:
        asyncio.run(serve(state.settings, state.make_credentials(state.settings)))
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

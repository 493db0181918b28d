"""Backend-agnostic domain model.

Entities are immutable values built once from a backend response.  Attribute
names are snake_case; serialized output uses the camelCase aliases so both
the CLI and the MCP tools emit the same field names.  Optional fields default
to ``None`` so "absent" is never confused with a zero value.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from pipeline_insights import timeline as _timeline

# Both backends emit 100ns-precision timestamps; datetime stops at microseconds.
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _trim_fraction(value: Any) -> Any:
    if isinstance(value, str):
        return _EXCESS_FRACTION.sub(r"\1", value)
    return value


Timestamp = Annotated[datetime, BeforeValidator(_trim_fraction)]


class DomainModel(BaseModel):
    """Frozen base with camelCase serialization aliases."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class Build(DomainModel):
    """One execution of a pipeline definition."""

    id: int
    build_number: str
    status: str
    result: str | None = None
    uri: str
    source_branch: str
    definition_name: str
    finish_time: Timestamp | None = None


class TimelineIssue(DomainModel):
    type: str
    message: str
    category: str | None = None


class TimelineRecord(DomainModel):
    """A single stage/phase/job/task record of a build timeline."""

    id: str
    parent_id: str | None = None
    name: str
    record_type: str
    order: int = 0
    state: str | None = None
    result: str | None = None
    error_count: int = 0
    warning_count: int = 0
    start_time: Timestamp | None = None
    finish_time: Timestamp | None = None
    issues: tuple[TimelineIssue, ...] = ()
    worker_name: str | None = None
    log_url: str | None = None


class Timeline(DomainModel):
    """Unordered bag of timeline records for one build.

    Tree shape is derived on demand; see :mod:`pipeline_insights.timeline`.
    """

    records: tuple[TimelineRecord, ...] = ()

    def get_issues(self) -> list[TimelineIssue]:
        """All issues (errors and warnings) across all records."""
        return _timeline.flatten_issues(self.records)

    def get_job_names(self) -> list[str]:
        return _timeline.job_names(self.records)

    def get_jobs(self) -> list[TimelineRecord]:
        return _timeline.job_records(self.records)

    def get_children(self, parent_id: str | None = None) -> list[TimelineRecord]:
        """Direct children of *parent_id*, or the top-level records when ``None``."""
        return _timeline.children_of(self.records, parent_id)


class Artifact(DomainModel):
    id: int
    name: str
    download_url: str | None = None
    resource_type: str | None = None


class TestFailure(DomainModel):
    """A failing test result, annotated with the run it came from."""

    __test__ = False

    test_case_title: str
    outcome: str
    error_message: str | None = None
    stack_trace: str | None = None
    test_run_id: int
    test_run_name: str


class WorkItem(DomainModel):
    """One distributed test execution, correlated back to the build that queued it.

    ``execution_time`` and ``queued_time`` are whole seconds.
    """

    friendly_name: str
    execution_time: int
    queued_time: int
    azdo_build_id: int
    azdo_phase_name: str
    azdo_attempt: int
    machine_name: str
    exit_code: int
    console_uri: str
    job_id: int
    job_name: str
    queue_name: str
    finished: Timestamp
    work_item_id: int
    status: str

    @property
    def key(self) -> tuple[int, int]:
        return (self.job_id, self.work_item_id)


class WorkItemConsole(DomainModel):
    job_id: int
    work_item_id: int
    text: str


def to_document(value: Any) -> Any:
    """Convert models (or lists of models) into JSON-ready structures."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list | tuple):
        return [to_document(item) for item in value]
    return value


def to_json(value: Any) -> str:
    """Render *value* as the indented JSON document both surfaces emit."""
    return json.dumps(to_document(value), indent=2)

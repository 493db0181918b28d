"""Timeline reconstruction over a flat bag of records.

The backend returns a build timeline as an unordered list in which each
record optionally names its parent.  These functions derive the tree shape
on demand.  Sorting is always by ``order`` with ties kept in input order
(``sorted`` is stable).

Records whose ``parent_id`` names a record that is not in the bag are
orphans.  They are never returned by :func:`children_of` and are never
reached by :func:`walk`; :func:`orphaned_records` exists so callers can see
them without the tree being rewritten.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pipeline_insights.models import TimelineIssue, TimelineRecord

JOB_RECORD_TYPE = "Job"


def _by_order(records: Sequence[TimelineRecord]) -> list[TimelineRecord]:
    return sorted(records, key=lambda record: record.order)


def children_of(
    records: Sequence[TimelineRecord], parent_id: str | None = None
) -> list[TimelineRecord]:
    """Return the direct children of *parent_id* (top-level records when ``None``)."""
    return _by_order([record for record in records if record.parent_id == parent_id])


def job_records(records: Sequence[TimelineRecord]) -> list[TimelineRecord]:
    """Return every ``Job`` record regardless of nesting depth, sorted by order."""
    return _by_order([record for record in records if record.record_type == JOB_RECORD_TYPE])


def job_names(records: Sequence[TimelineRecord]) -> list[str]:
    """Return the distinct names of ``Job`` records."""
    seen: dict[str, None] = {}
    for record in job_records(records):
        seen.setdefault(record.name, None)
    return list(seen)


def flatten_issues(records: Sequence[TimelineRecord]) -> list[TimelineIssue]:
    """Concatenate every record's issues, in record order."""
    return [issue for record in records for issue in record.issues]


def orphaned_records(records: Sequence[TimelineRecord]) -> list[TimelineRecord]:
    """Return records whose declared parent is missing from the bag."""
    known_ids = {record.id for record in records}
    return [
        record
        for record in records
        if record.parent_id is not None and record.parent_id not in known_ids
    ]


def walk(records: Sequence[TimelineRecord]) -> Iterator[tuple[int, TimelineRecord]]:
    """Yield ``(depth, record)`` pairs in depth-first pre-order from the top level.

    Acyclicity is not validated.  A record is visited at most once, so a
    cycle simply stops the descent.
    """
    by_parent: dict[str | None, list[TimelineRecord]] = {}
    for record in records:
        by_parent.setdefault(record.parent_id, []).append(record)

    visited: set[str] = set()
    stack: list[tuple[int, TimelineRecord]] = [
        (0, record) for record in reversed(_by_order(by_parent.get(None, [])))
    ]
    while stack:
        depth, record = stack.pop()
        if record.id in visited:
            continue
        visited.add(record.id)
        yield depth, record
        children = _by_order(by_parent.get(record.id, []))
        stack.extend((depth + 1, child) for child in reversed(children))

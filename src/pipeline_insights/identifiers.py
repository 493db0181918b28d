"""Identifier validation and the naming conventions both backends share."""

from __future__ import annotations

import re

from pipeline_insights.errors import InvalidArgumentError

_REPO_PART = re.compile(r"^[A-Za-z0-9_.-]+$")
_REPO_PART_RULE = "must contain only letters, digits, '-', '_' or '.'"


def merge_ref(pr_number: int) -> str:
    """Branch name under which a pull request's merge commit is built."""
    require_non_negative("pr_number", pr_number)
    return f"refs/pull/{pr_number}/merge"


def require_non_negative(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(name, value, "must be an integer")
    if value < 0:
        raise InvalidArgumentError(name, value, "must be non-negative")
    return value


def require_positive(name: str, value: object) -> int:
    require_non_negative(name, value)
    if value == 0:
        raise InvalidArgumentError(name, value, "must be positive")
    return value  # type: ignore[return-value]


def validate_owner_repo(owner: str, repo: str) -> tuple[str, str]:
    """Validate both halves of an ``owner/repo`` pair."""
    if not isinstance(owner, str) or not _REPO_PART.match(owner):
        raise InvalidArgumentError("owner", owner, _REPO_PART_RULE)
    if not isinstance(repo, str) or not _REPO_PART.match(repo):
        raise InvalidArgumentError("repository", repo, _REPO_PART_RULE)
    return owner, repo


def parse_repository(value: str) -> tuple[str, str]:
    """Split an ``owner/repo`` string, e.g. ``"dotnet/roslyn"``."""
    parts = value.split("/") if isinstance(value, str) else []
    if len(parts) != 2:
        raise InvalidArgumentError("repository", value, "must be in owner/repository format")
    return validate_owner_repo(parts[0], parts[1])

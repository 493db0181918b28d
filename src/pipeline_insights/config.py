"""Configuration loading and validation.

Settings come from an optional ``pipeline.toml`` and are then overridden by
environment variables.  Every section is optional; an absent file yields the
public defaults (``dnceng-public/public`` and the production analytics
cluster).

Example::

    [azdo]
    organization = "dnceng-public"
    project = "public"

    [helix]
    cluster_url = "https://engsrvprod.kusto.windows.net"
    database = "engineeringdata"

    [http]
    timeout_seconds = 30
    max_concurrency = 4

    [auth]
    token = "${PIPELINE_ACCESS_TOKEN}"

    [logging]
    level = "INFO"
    format = "text"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "pipeline.toml"
DEFAULT_ORGANIZATION = "dnceng-public"
DEFAULT_PROJECT = "public"
DEFAULT_AZDO_HOST = "dev.azure.com"
DEFAULT_API_VERSION = "7.1"
DEFAULT_CLUSTER_URL = "https://engsrvprod.kusto.windows.net"
DEFAULT_DATABASE = "engineeringdata"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class HttpConfig:
    """Timeouts and fan-out limits applied to every remote call."""

    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0
    max_concurrency: int = 4


@dataclass(frozen=True)
class AzdoConfig:
    """Coordinates of the build-orchestration backend."""

    organization: str = DEFAULT_ORGANIZATION
    project: str = DEFAULT_PROJECT
    host: str = DEFAULT_AZDO_HOST
    api_version: str = DEFAULT_API_VERSION

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/{self.organization}/{self.project}/"

    def build_web_uri(self, build_id: int) -> str:
        return f"{self.base_url}_build/results?buildId={build_id}"


@dataclass(frozen=True)
class HelixConfig:
    """Coordinates of the analytics cluster."""

    cluster_url: str = DEFAULT_CLUSTER_URL
    database: str = DEFAULT_DATABASE


@dataclass(frozen=True)
class AuthConfig:
    """Credential selection.

    When ``token`` is set it is used as a static bearer token for both
    backends; otherwise the Azure default credential chain is used.
    """

    token: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass(frozen=True)
class PipelineSettings:
    """Parsed and validated configuration."""

    azdo: AzdoConfig = field(default_factory=AzdoConfig)
    helix: HelixConfig = field(default_factory=HelixConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def with_azdo(
        self, organization: str | None = None, project: str | None = None
    ) -> PipelineSettings:
        """Return a copy with the organization and/or project overridden."""
        azdo = replace(
            self.azdo,
            organization=organization or self.azdo.organization,
            project=project or self.azdo.project,
        )
        return replace(self, azdo=azdo)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table, got {type(section).__name__}")
    return section


def _non_empty(section: dict, key: str, default: str, *, where: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} must be a non-empty string, got {value!r}")
    return value.strip()


def _positive_number(section: dict, key: str, default: float, *, where: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{where}.{key} must be a positive number, got {value!r}")
    return float(value)


def _parse_azdo(data: dict) -> AzdoConfig:
    section = _section(data, "azdo")
    return AzdoConfig(
        organization=_non_empty(section, "organization", DEFAULT_ORGANIZATION, where="azdo"),
        project=_non_empty(section, "project", DEFAULT_PROJECT, where="azdo"),
        host=_non_empty(section, "host", DEFAULT_AZDO_HOST, where="azdo"),
        api_version=_non_empty(section, "api_version", DEFAULT_API_VERSION, where="azdo"),
    )


def _parse_helix(data: dict) -> HelixConfig:
    section = _section(data, "helix")
    cluster_url = _non_empty(section, "cluster_url", DEFAULT_CLUSTER_URL, where="helix")
    if not cluster_url.startswith(("https://", "http://")):
        raise ConfigError(f"helix.cluster_url must be an http(s) URL, got {cluster_url!r}")
    return HelixConfig(
        cluster_url=cluster_url.rstrip("/"),
        database=_non_empty(section, "database", DEFAULT_DATABASE, where="helix"),
    )


def _parse_http(data: dict) -> HttpConfig:
    section = _section(data, "http")
    max_concurrency = section.get("max_concurrency", 4)
    if (
        isinstance(max_concurrency, bool)
        or not isinstance(max_concurrency, int)
        or max_concurrency <= 0
    ):
        raise ConfigError(
            f"Invalid http.max_concurrency: {max_concurrency!r}. Must be a positive integer."
        )
    return HttpConfig(
        timeout_seconds=_positive_number(section, "timeout_seconds", 30.0, where="http"),
        connect_timeout_seconds=_positive_number(
            section, "connect_timeout_seconds", 10.0, where="http"
        ),
        max_concurrency=max_concurrency,
    )


def _parse_logging(data: dict) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"Invalid logging.level: {level!r}. Must be one of {_LOG_LEVELS}.")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be one of {_LOG_FORMATS}.")
    return LoggingConfig(level=level, format=fmt)


def _parse_auth(data: dict) -> AuthConfig:
    section = _section(data, "auth")
    token = section.get("token")
    if token is not None and not isinstance(token, str):
        raise ConfigError("auth.token must be a string")
    return AuthConfig(token=token.strip() if token and token.strip() else None)


def _apply_env_overrides(settings: PipelineSettings) -> PipelineSettings:
    env = os.environ
    settings = settings.with_azdo(
        organization=env.get("PIPELINE_ORGANIZATION"),
        project=env.get("PIPELINE_PROJECT"),
    )
    if env.get("PIPELINE_ACCESS_TOKEN"):
        settings = replace(settings, auth=AuthConfig(token=env["PIPELINE_ACCESS_TOKEN"].strip()))
    if env.get("PIPELINE_LOG_LEVEL"):
        level = env["PIPELINE_LOG_LEVEL"].upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(
                f"Invalid PIPELINE_LOG_LEVEL: {level!r}. Must be one of {_LOG_LEVELS}."
            )
        settings = replace(settings, logging=replace(settings.logging, level=level))
    return settings


def parse_settings(data: dict) -> PipelineSettings:
    """Build settings from an already-parsed TOML document."""
    data = resolve_env_vars(data)
    return PipelineSettings(
        azdo=_parse_azdo(data),
        helix=_parse_helix(data),
        http=_parse_http(data),
        auth=_parse_auth(data),
        logging=_parse_logging(data),
    )


def load_config(path: Path | None = None) -> PipelineSettings:
    """Load settings from *path*, ``$PIPELINE_CONFIG`` or ``./pipeline.toml``.

    An explicitly given path must exist.  When no path is given and no
    default file is present, defaults are used.  Environment overrides are
    applied last.

    Raises
    ------
    ConfigError
        If the file is missing (explicit path only), contains invalid TOML,
        or holds invalid values.
    """
    explicit = path is not None or bool(os.environ.get("PIPELINE_CONFIG"))
    toml_path = Path(path or os.environ.get("PIPELINE_CONFIG") or DEFAULT_CONFIG_FILENAME)

    data: dict = {}
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    elif explicit:
        raise ConfigError(f"Config file not found: {toml_path}")

    return _apply_env_overrides(parse_settings(data))

"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Without a config file the built-in :data:`DEFAULT_RAW_CONFIG` is used, which
takes the upstream credentials from ``${HSL_USERNAME}`` / ``${HSL_PASSWORD}``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

DEFAULT_RAW_CONFIG: dict[str, Any] = {
    "upstream": {
        "username": "${HSL_USERNAME}",
        "password": "${HSL_PASSWORD}",
    },
}


@dataclass
class UpstreamConfig:
    """HSL live feed connection settings."""

    host: str = "83.145.232.209"
    port: int = 8080
    username: str = ""
    password: str = ""
    # The feed requires some filter; onroute:1 drops the least data.
    filter: str = "onroute:1"
    read_size: int = 65536


@dataclass
class ServerConfig:
    """WebSocket listener settings."""

    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "hsl-live-proxy.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(default_factory=lambda: ["*password*"])


@dataclass
class AppConfig:
    """Top-level application configuration."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*.

    The CLI passes ``-u``/``-p`` as the ``HSL_USERNAME``/``HSL_PASSWORD``
    overrides, so they fill the same placeholders the environment does.
    """

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Interpolate every string in a parsed config file (keys are left as is).

    This is where the default config's ``${HSL_USERNAME}``/``${HSL_PASSWORD}``
    placeholders are resolved, from *overrides* first and then the environment.
    """
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _known(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        upstream=UpstreamConfig(**_known(UpstreamConfig, raw.get("upstream", {}))),
        server=ServerConfig(**_known(ServerConfig, raw.get("server", {}))),
        logging=LoggingConfig(
            file=LogFileConfig(**_known(LogFileConfig, log_file_raw)),
            **_known(LoggingConfig, logging_raw),
        ),
    )


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
    username: str | None = None,
    password: str | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to a JSON config file.  ``None`` uses
        :data:`DEFAULT_RAW_CONFIG`.
    overrides:
        CLI-supplied variable overrides (e.g. ``HSL_PASSWORD``).
    schema_path:
        Path to the JSON Schema file.  Defaults to the packaged
        ``config.schema.json``.
    username, password:
        Explicit upstream credentials.  When given they replace whatever
        the file (or its placeholders) supplied, before the credentials
        are checked.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved or the upstream
        credentials are empty.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    if path is None:
        raw: dict[str, Any] = DEFAULT_RAW_CONFIG
    else:
        raw = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    cfg = _dict_to_config(interpolated)
    if username:
        cfg.upstream.username = username
    if password:
        cfg.upstream.password = password
    _require_credentials(cfg.upstream)
    return cfg


def _require_credentials(upstream: UpstreamConfig) -> None:
    missing: list[str] = [
        name for name in ("username", "password") if not getattr(upstream, name)
    ]
    if missing:
        raise ValueError(f"Upstream {' and '.join(missing)} must not be empty")

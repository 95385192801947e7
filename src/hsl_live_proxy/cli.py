"""Click CLI for HSL Live Proxy.

Entry point registered in ``pyproject.toml`` as ``hsl-live-proxy``::

    hsl-live-proxy -u USERNAME -p PASSWORD [-P PORT] [-l LOGFILE]
    hsl-live-proxy -c config.json
    hsl-live-proxy -c config.json --validate-config
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from hsl_live_proxy import __version__
from hsl_live_proxy.config import AppConfig, LoggingConfig, load_config
from hsl_live_proxy.redactor import CredentialRedactingFilter, collect_secret_values
from hsl_live_proxy.relay import Relay

logger = logging.getLogger("hsl_live_proxy")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ── log formatting ──────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    logging_config: LoggingConfig,
    level: str,
    secret_values: list[str],
) -> None:
    """Configure the root logger: stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if logging_config.format == "text":
        formatter: logging.Formatter = logging.Formatter(TEXT_FORMAT)
    else:
        formatter = _JsonFormatter()

    # Filters on handlers also see records propagated from child loggers.
    redactor = CredentialRedactingFilter(secret_values)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.addFilter(redactor)
    root.addHandler(stderr_handler)

    log_file = logging_config.file
    if log_file.enabled:
        Path(log_file.path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_file.path,
            maxBytes=log_file.max_size_bytes,
            backupCount=log_file.backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redactor)
        root.addHandler(file_handler)


# ── main command ────────────────────────────────────────────────────


@click.command()
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path (default: $HSL_PROXY_CONFIG, else built-in).")
@click.option("-u", "--username", default=None, help="The username for the HSL API.")
@click.option("-p", "--password", default=None, help="The password for the HSL API.")
@click.option("-P", "--port", type=click.IntRange(1, 65535), default=None,
              help="The port to listen for WebSocket connections on.")
@click.option("-l", "--logfile", default=None,
              help="The path to the log file that should be used.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
def main(
    config_path: Optional[str],
    username: Optional[str],
    password: Optional[str],
    port: Optional[int],
    logfile: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
) -> None:
    """HSL Live Proxy — relays the HSL live feed to WebSocket clients."""
    cfg_path = config_path or os.environ.get("HSL_PROXY_CONFIG")

    overrides: dict[str, str] = {}
    if username:
        overrides["HSL_USERNAME"] = username
    if password:
        overrides["HSL_PASSWORD"] = password

    try:
        cfg = load_config(
            cfg_path, overrides=overrides, username=username, password=password
        )
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    # Explicit flags win over the config file.
    if port is not None:
        cfg.server.port = port
    if logfile:
        cfg.logging.file.enabled = True
        cfg.logging.file.path = logfile

    effective_level = (
        log_level
        or os.environ.get("HSL_PROXY_LOG_LEVEL")
        or cfg.logging.level
    )

    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(cfg.logging, effective_level, secret_values)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting hsl-live-proxy %s (upstream=%s:%d, listen=%s:%d)",
        __version__,
        cfg.upstream.host,
        cfg.upstream.port,
        cfg.server.host,
        cfg.server.port,
    )

    asyncio.run(_run(cfg))


async def _run(cfg: AppConfig) -> None:
    """Serve until SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    relay = Relay(cfg)

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        relay.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    await relay.serve()

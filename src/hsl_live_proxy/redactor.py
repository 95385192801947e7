"""Logging filter that keeps upstream credentials out of log output.

Secret values are collected from the resolved config: every string whose
*key* matches one of ``logging.redact_patterns`` (shell-style globs,
case-insensitive).  The filter rewrites each record's message and string
arguments, replacing those values with ``[REDACTED]``.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Iterable

REDACTED = "[REDACTED]"


class CredentialRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs known credentials."""

    def __init__(self, secret_values: Iterable[str] = ()) -> None:
        super().__init__()
        # Single characters would mangle unrelated text.
        self._secrets = sorted(
            {s for s in secret_values if s and len(s) > 1}, key=len, reverse=True
        )

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True

        record.msg = self._scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) for a in record.args)
        return True

    def _scrub(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        for secret in self._secrets:
            value = value.replace(secret, REDACTED)
        return value


def collect_secret_values(config_dict: dict[str, Any], patterns: list[str]) -> list[str]:
    """Return the string values in *config_dict* whose keys match *patterns*."""
    found: list[str] = []
    lowered = [p.lower() for p in patterns]

    def _visit(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatchcase(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _visit(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _visit(item)

    _visit(config_dict)
    return found

"""Decode upstream feed batches into :class:`DataPoint` records.

Batch format::

    record\\r\\n
    record\\r\\n
    ...                 ← an empty segment ends the batch

Each record is ``;``-separated with a fixed positional schema (see
:data:`hsl_live_proxy.models.COLUMNS`).  Short records are accepted: missing
trailing columns decode to ``None``.
"""

from __future__ import annotations

import math
from typing import Optional

from hsl_live_proxy.errors import DecodeError
from hsl_live_proxy.models import COLUMNS, DataPoint

RECORD_TERMINATOR = "\r\n"
FIELD_DELIMITER = ";"

_INT_COLUMNS = frozenset({"type"})
_FLOAT_COLUMNS = frozenset({"latitude", "longitude"})


def split_batch(batch: str) -> list[str]:
    """Split a raw batch into its records.

    Stops at the first empty segment, so the segment produced by a trailing
    terminator never becomes a record.
    """
    records: list[str] = []
    for segment in batch.split(RECORD_TERMINATOR):
        if segment == "":
            break
        records.append(segment)
    return records


def decode_record(record: str) -> DataPoint:
    """Decode one feed record.

    Raises
    ------
    DecodeError
        If the record has no vehicle id or a coordinate is not a finite number.
    """
    columns = record.split(FIELD_DELIMITER)

    if not columns[0].strip():
        raise DecodeError("Record has no vehicle id", record)

    values: dict[str, object] = {}
    for name, raw in zip(COLUMNS, columns):
        if name in _INT_COLUMNS:
            values[name] = _parse_int(raw)
        elif name in _FLOAT_COLUMNS:
            values[name] = _parse_float(name, raw, record)
        else:
            values[name] = raw

    return DataPoint(**values)


def _parse_int(raw: str) -> Optional[int]:
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _parse_float(name: str, raw: str, record: str) -> Optional[float]:
    if not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise DecodeError(f"Invalid {name} value {raw!r}", record) from exc
    # nan and inf parse as floats but have no JSON form.
    if not math.isfinite(value):
        raise DecodeError(f"Invalid {name} value {raw!r}", record)
    return value

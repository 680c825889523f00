"""
Utility functions for stream_ingest.

Includes id/time helpers, record validation, JSON coercion and NDJSON reading.
"""

import gzip
import io
import json
import sys
import uuid
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from pydantic_core import to_jsonable_python

from .errors import InvalidRecordError


def generate_id() -> str:
    """Generate a UUID hex string for batch identification."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def freeze_record(record: Any) -> Mapping[str, Any]:
    """Validate record shape and return a read-only shallow copy.

    Raises:
        InvalidRecordError: record is not a mapping or has non-string keys
    """
    if not isinstance(record, Mapping):
        raise InvalidRecordError(f"record must be a mapping, got {type(record).__name__}")
    for key in record:
        if not isinstance(key, str):
            raise InvalidRecordError(f"record field names must be str, got {key!r}")
    return MappingProxyType(dict(record))


def to_jsonable(record: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a record to JSON-safe primitives (datetimes -> ISO strings, etc.)."""
    return to_jsonable_python(dict(record), serialize_unknown=True)


def iter_ndjson(path: str) -> Iterator[dict[str, Any]]:
    """Yield objects from an NDJSON file, a .gz file, or stdin when path is '-'.

    Blank lines are skipped. Lines that are not JSON objects raise ValueError
    with the line number.
    """
    if path == "-":
        fh: io.TextIOBase = sys.stdin  # type: ignore[assignment]
        close = False
    elif path.endswith(".gz"):
        fh = io.TextIOWrapper(gzip.open(path, "rb"), encoding="utf-8")
        close = True
    else:
        fh = open(path, "r", encoding="utf-8")
        close = True

    try:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            obj = json.loads(line)
            if not isinstance(obj, dict):
                raise ValueError(f"line {lineno}: expected JSON object, got {type(obj).__name__}")
            yield obj
    finally:
        if close:
            fh.close()

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from ..errors import MalformedRecordError
from ..models.common import NormalizedRecord, RawRecord

_WHITESPACE = re.compile(r"\s+")
_RESERVED_KEYS = frozenset({"id"})


def canonical_key(key: str) -> str:
    """``"Nom Dept"`` -> ``"nom_dept"``."""
    return _WHITESPACE.sub("_", key).lower()


def normalize_record(raw: RawRecord, *, index: int | None = None) -> Dict[str, Any]:
    """Drop falsy values and canonicalize keys; last write wins on collision."""
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(f"expected an object, got {type(raw).__name__}", index=index)
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise MalformedRecordError(f"non-string key {key!r}", index=index)
        if not value:
            continue
        normalized[canonical_key(key)] = value
    for reserved in _RESERVED_KEYS:
        normalized.pop(reserved, None)
    return normalized


def parse_upload(payload: bytes | str) -> Tuple[RawRecord, ...]:
    """Parse an uploaded JSON array of flat records in one pass."""
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise MalformedRecordError(f"payload is not valid UTF-8: {exc}") from exc
    else:
        text = payload
    if not text.strip():
        raise MalformedRecordError("payload is empty")
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedRecordError(f"payload is not valid JSON: {exc.msg} (line {exc.lineno})") from exc
    if not isinstance(document, list):
        raise MalformedRecordError(f"expected a JSON array, got {type(document).__name__}")
    for index, item in enumerate(document):
        if not isinstance(item, dict):
            raise MalformedRecordError(f"expected an object, got {type(item).__name__}", index=index)
    return tuple(document)


def normalize_records(raw_records: Iterable[RawRecord]) -> List[Dict[str, Any]]:
    return [normalize_record(raw, index=index) for index, raw in enumerate(raw_records)]


def build_records(normalized: Sequence[Mapping[str, Any]], ids: Sequence[int]) -> Tuple[NormalizedRecord, ...]:
    if len(normalized) != len(ids):
        raise ValueError(f"got {len(ids)} ids for {len(normalized)} records")
    return tuple(NormalizedRecord(id=record_id, fields=fields) for fields, record_id in zip(normalized, ids))


__all__ = [
    "build_records",
    "canonical_key",
    "normalize_record",
    "normalize_records",
    "parse_upload",
]

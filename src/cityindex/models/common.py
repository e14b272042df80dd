from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import DeadlineExceeded, JobCancelled

RawRecord = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class NormalizedRecord:
    """Canonical record with its assigned id. Never mutated after creation."""

    id: int
    fields: Mapping[str, Any]

    def __post_init__(self) -> None:
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def as_document(self, primary_key: str = "id") -> Dict[str, Any]:
        document = dict(self.fields)
        document[primary_key] = self.id
        return document


@dataclass(frozen=True, slots=True)
class BatchChunk:
    index: int
    offset: int
    records: Sequence[Any]

    def __len__(self) -> int:
        return len(self.records)


@dataclass(slots=True)
class ChunkOutcome:
    index: int
    size: int
    succeeded: bool
    error: str | None = None
    failed_items: int = 0


@dataclass(slots=True)
class SinkReport:
    sink: str
    outcomes: List[ChunkOutcome] = field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return len(self.outcomes)

    @property
    def failed_chunks(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.succeeded)

    @property
    def written_records(self) -> int:
        return sum(outcome.size for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed_records(self) -> int:
        return sum(outcome.failed_items or outcome.size for outcome in self.outcomes if not outcome.succeeded)

    def to_dict(self) -> Dict[str, object]:
        return {
            "sink": self.sink,
            "chunks": self.chunk_count,
            "failed_chunks": self.failed_chunks,
            "written_records": self.written_records,
            "failed_records": self.failed_records,
            "errors": [outcome.error for outcome in self.outcomes if outcome.error],
        }


@dataclass(slots=True)
class FanoutReport:
    sinks: Dict[str, SinkReport] = field(default_factory=dict)

    @property
    def failed_chunks(self) -> int:
        return sum(report.failed_chunks for report in self.sinks.values())

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {name: report.to_dict() for name, report in self.sinks.items()}


class JobState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.PARTIAL, JobState.FAILED, JobState.CANCELLED})


@dataclass(slots=True)
class IngestionJobRecord:
    job_id: str
    state: JobState
    record_count: int
    created_at: datetime
    updated_at: datetime
    sinks: Dict[str, Dict[str, object]] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PreparedJob:
    """A job that reached the created state: parsed, normalized and id-assigned."""

    job_id: str
    records: Sequence[NormalizedRecord]


@dataclass(slots=True)
class JobAcknowledgement:
    job_id: str
    state: JobState
    record_count: int
    message: str = "job started"


class JobContext:
    """Cancellation flag plus deadline threaded through a running job."""

    def __init__(self, job_id: str, *, deadline_seconds: float | None = None) -> None:
        self.job_id = job_id
        self._cancelled = threading.Event()
        self._deadline: Optional[float] = None
        if deadline_seconds is not None and deadline_seconds > 0:
            self._deadline = time.monotonic() + deadline_seconds

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def check(self) -> None:
        if self._cancelled.is_set():
            raise JobCancelled(f"job {self.job_id} cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise DeadlineExceeded(f"job {self.job_id} exceeded its deadline")

    def sleep(self, seconds: float) -> None:
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        self._cancelled.wait(timeout)
        self.check()

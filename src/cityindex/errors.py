from __future__ import annotations

from typing import Mapping, Sequence


class CityIndexError(Exception):
    """Base class for ingestion pipeline errors."""


class MalformedRecordError(CityIndexError):
    """The uploaded payload is not a JSON array of flat records."""

    def __init__(self, message: str, *, index: int | None = None) -> None:
        super().__init__(message if index is None else f"record {index}: {message}")
        self.index = index


class IdServiceUnavailable(CityIndexError):
    """The id backend could not hand out identifiers in time."""


class DispatchBackpressure(CityIndexError):
    """The job dispatcher refused new work because its queue is full."""


class SinkChunkWriteError(CityIndexError):
    def __init__(self, sink: str, chunk_index: int, message: str, *, failed_items: int | None = None) -> None:
        super().__init__(f"{sink} chunk {chunk_index}: {message}")
        self.sink = sink
        self.chunk_index = chunk_index
        self.failed_items = failed_items


class BatchWriteExhausted(CityIndexError):
    """Retry budget spent while the store still declined some items."""

    def __init__(self, unprocessed: Sequence[object], *, passes: int, elapsed: float) -> None:
        super().__init__(
            f"{len(unprocessed)} items still unprocessed after {passes} passes ({elapsed:.1f}s)"
        )
        self.unprocessed = list(unprocessed)
        self.passes = passes
        self.elapsed = elapsed


class SinkPipelineError(CityIndexError):
    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        names = ", ".join(f"{name}: {exc}" for name, exc in failures.items())
        super().__init__(f"sink pipelines failed: {names}")
        self.failures = dict(failures)


class JobCancelled(CityIndexError):
    pass


class DeadlineExceeded(JobCancelled):
    pass


__all__ = [
    "BatchWriteExhausted",
    "CityIndexError",
    "DeadlineExceeded",
    "DispatchBackpressure",
    "IdServiceUnavailable",
    "JobCancelled",
    "MalformedRecordError",
    "SinkChunkWriteError",
    "SinkPipelineError",
]

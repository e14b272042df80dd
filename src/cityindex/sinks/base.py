from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from time import perf_counter
from typing import List, Sequence, TypeVar

from ..errors import JobCancelled, SinkChunkWriteError
from ..models.common import BatchChunk, ChunkOutcome, JobContext, NormalizedRecord, SinkReport
from ..telemetry.logger import MetricsRecorder

T = TypeVar("T")

LOGGER = logging.getLogger("cityindex.sinks")


class RecordSink(ABC):
    """A downstream store that accepts bounded bulk writes of normalized records."""

    name: str = "sink"
    # None hands the whole record sequence to write_chunk as one chunk.
    chunk_size: int | None = 1000

    @abstractmethod
    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        """Persist one chunk. Raise ``SinkChunkWriteError`` on failure."""
        raise NotImplementedError


def chunk_records(records: Sequence[T], size: int | None) -> List[BatchChunk]:
    """Contiguous, non-overlapping slices of at most ``size`` items (all of them when ``size`` is None)."""
    if size is None:
        return [BatchChunk(index=0, offset=0, records=tuple(records))] if len(records) else []
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [
        BatchChunk(index=index, offset=offset, records=tuple(records[offset : offset + size]))
        for index, offset in enumerate(range(0, len(records), size))
    ]


class ChunkedBatchWriter:
    """Writes a record sequence to one sink, one chunk at a time.

    Chunk failures are logged and counted but never retried here; the writer
    always moves on to the next chunk. Cancellation propagates.
    """

    def __init__(self, sink: RecordSink, *, metrics: MetricsRecorder | None = None) -> None:
        self._sink = sink
        self._metrics = metrics

    @property
    def sink(self) -> RecordSink:
        return self._sink

    def write(self, records: Sequence[NormalizedRecord], *, context: JobContext | None = None) -> SinkReport:
        report = SinkReport(sink=self._sink.name)
        chunks = chunk_records(records, self._sink.chunk_size)
        job_id = context.job_id if context else None
        for chunk in chunks:
            if context is not None:
                context.check()
            started = perf_counter()
            try:
                self._sink.write_chunk(chunk, context=context)
            except JobCancelled:
                raise
            except SinkChunkWriteError as exc:
                outcome = ChunkOutcome(chunk.index, len(chunk), False, str(exc), exc.failed_items or len(chunk))
            except Exception as exc:
                outcome = ChunkOutcome(chunk.index, len(chunk), False, f"{type(exc).__name__}: {exc}", len(chunk))
            else:
                outcome = ChunkOutcome(chunk.index, len(chunk), True)
            latency_ms = (perf_counter() - started) * 1000.0
            report.outcomes.append(outcome)
            if outcome.succeeded:
                LOGGER.debug(
                    "sink.chunk_written",
                    extra={"sink": self._sink.name, "job_id": job_id, "chunk": chunk.index, "size": len(chunk)},
                )
            else:
                LOGGER.error(
                    "sink.chunk_failed",
                    extra={
                        "sink": self._sink.name,
                        "job_id": job_id,
                        "chunk": chunk.index,
                        "size": len(chunk),
                        "error": outcome.error,
                    },
                )
            if self._metrics is not None:
                self._metrics.record_chunk(self._sink.name, len(chunk), succeeded=outcome.succeeded, latency_ms=latency_ms)
        LOGGER.info(
            "sink.pipeline_finished",
            extra={
                "sink": self._sink.name,
                "job_id": job_id,
                "chunks": report.chunk_count,
                "failed_chunks": report.failed_chunks,
            },
        )
        return report


__all__ = ["ChunkedBatchWriter", "RecordSink", "chunk_records"]

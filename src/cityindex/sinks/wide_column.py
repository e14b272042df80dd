from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, List, Sequence, TypeVar

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import BatchWriteExhausted, SinkChunkWriteError
from ..models.common import BatchChunk, JobContext, NormalizedRecord
from ..telemetry.logger import MetricsRecorder
from .base import RecordSink, chunk_records

T = TypeVar("T")

LOGGER = logging.getLogger("cityindex.sinks.wide_column")

MAX_BATCH_ITEMS = 25

BatchWritePrimitive = Callable[[Sequence[T]], Sequence[T]]


@dataclass(slots=True)
class RetryReport:
    passes: int = 0
    calls: int = 0
    written: int = 0


class UnprocessedItemRetrier(Generic[T]):
    """Writes items in batches of ``batch_size`` and re-drives only what the store declined.

    Each pass chunks the pending set, issues one batch write per chunk and
    pauses after every call (``first_pass_delay`` on the first pass,
    ``retry_delay`` afterwards). Items returned as unprocessed form the next
    pass. ``BatchWriteExhausted`` is raised once ``max_passes`` or
    ``max_elapsed_seconds`` is spent with items still pending.
    """

    def __init__(
        self,
        write_batch: BatchWritePrimitive,
        *,
        batch_size: int = MAX_BATCH_ITEMS,
        first_pass_delay: float = 1.0,
        retry_delay: float = 2.0,
        max_passes: int = 5,
        max_elapsed_seconds: float | None = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if not 0 < batch_size <= MAX_BATCH_ITEMS:
            raise ValueError(f"batch_size must be within 1..{MAX_BATCH_ITEMS}")
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        self._write_batch = write_batch
        self._batch_size = batch_size
        self._first_pass_delay = first_pass_delay
        self._retry_delay = retry_delay
        self._max_passes = max_passes
        self._max_elapsed = max_elapsed_seconds
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics

    def write(self, items: Sequence[T], *, context: JobContext | None = None) -> RetryReport:
        report = RetryReport()
        pending: List[T] = list(items)
        started = self._clock()
        while pending:
            elapsed = self._clock() - started
            if report.passes >= self._max_passes or (
                report.passes and self._max_elapsed is not None and elapsed >= self._max_elapsed
            ):
                LOGGER.error(
                    "batch_write.exhausted",
                    extra={"pending": len(pending), "passes": report.passes, "elapsed": elapsed},
                )
                raise BatchWriteExhausted(pending, passes=report.passes, elapsed=elapsed)
            report.passes += 1
            delay = self._first_pass_delay if report.passes == 1 else self._retry_delay
            LOGGER.info("batch_write.pass", extra={"pass": report.passes, "items": len(pending)})
            unprocessed: List[T] = []
            for chunk in chunk_records(pending, self._batch_size):
                if context is not None:
                    context.check()
                declined = list(self._write_batch(chunk.records) or ())
                report.calls += 1
                report.written += len(chunk) - len(declined)
                unprocessed.extend(declined)
                self._pause(delay, context)
            if unprocessed:
                LOGGER.warning(
                    "batch_write.unprocessed",
                    extra={"pass": report.passes, "unprocessed": len(unprocessed)},
                )
                if self._metrics is not None:
                    self._metrics.record_batch_retry(len(unprocessed))
            pending = unprocessed
        return report

    def _pause(self, seconds: float, context: JobContext | None) -> None:
        if seconds <= 0:
            return
        if context is not None:
            context.sleep(seconds)
        else:
            self._sleep(seconds)


_SERIALIZER = TypeSerializer()


def to_put_request(record: NormalizedRecord, *, primary_key: str = "id") -> Dict[str, Any]:
    """Render a record as a ``PutRequest`` with DynamoDB typed attributes."""
    plain = json.loads(json.dumps(record.as_document(primary_key), default=str), parse_float=Decimal)
    return {"PutRequest": {"Item": {key: _SERIALIZER.serialize(value) for key, value in plain.items()}}}


class DynamoDBBatchWriter:
    """``BatchWriteItem`` against one table; returns the write requests DynamoDB left unprocessed."""

    def __init__(self, client, *, table_name: str) -> None:
        self._client = client
        self._table_name = table_name

    def __call__(self, requests: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        response = self._client.batch_write_item(
            RequestItems={self._table_name: list(requests)},
            ReturnItemCollectionMetrics="SIZE",
        )
        LOGGER.debug(
            "dynamodb.batch_write",
            extra={
                "table": self._table_name,
                "items": len(requests),
                "item_collection_metrics": response.get("ItemCollectionMetrics"),
            },
        )
        return list((response.get("UnprocessedItems") or {}).get(self._table_name, []))


class WideColumnSink(RecordSink):
    """Hands records to the retrier, which splits them into 25-item batch writes.

    With the default ``chunk_size=None`` the whole job is one retrier run, so
    every pass covers all records still unprocessed across the job.
    """

    name = "wide_column"

    def __init__(
        self,
        retrier: UnprocessedItemRetrier,
        *,
        primary_key: str = "id",
        chunk_size: int | None = None,
    ) -> None:
        self._retrier = retrier
        self._primary_key = primary_key
        self.chunk_size = chunk_size

    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        requests = [to_put_request(record, primary_key=self._primary_key) for record in chunk.records]
        try:
            report = self._retrier.write(requests, context=context)
        except BatchWriteExhausted as exc:
            raise SinkChunkWriteError(self.name, chunk.index, str(exc), failed_items=len(exc.unprocessed)) from exc
        except (ClientError, BotoCoreError) as exc:
            raise SinkChunkWriteError(self.name, chunk.index, str(exc)) from exc
        LOGGER.debug(
            "wide_column.chunk_written",
            extra={"chunk": chunk.index, "passes": report.passes, "calls": report.calls},
        )


__all__ = [
    "DynamoDBBatchWriter",
    "RetryReport",
    "UnprocessedItemRetrier",
    "WideColumnSink",
    "to_put_request",
]

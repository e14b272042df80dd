from __future__ import annotations

import concurrent.futures
import logging
from typing import Dict, List, Sequence

from ..errors import JobCancelled, SinkPipelineError
from ..models.common import FanoutReport, JobContext, NormalizedRecord
from ..sinks.base import ChunkedBatchWriter, RecordSink
from ..telemetry.logger import MetricsRecorder

LOGGER = logging.getLogger("cityindex.fanout")


class DualSinkFanout:
    """Runs the document and search pipelines (plus any extra sinks) concurrently.

    Every pipeline is started before the first one is awaited; they are then
    awaited in order: document sink, search sink, extra sinks. A pipeline that
    crashes does not stop the others. Once all have finished, crashes are
    raised together as ``SinkPipelineError`` (or ``JobCancelled`` when the
    job was cancelled).
    """

    def __init__(
        self,
        *,
        document_sink: RecordSink,
        search_sink: RecordSink,
        extra_sinks: Sequence[RecordSink] = (),
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._sinks: List[RecordSink] = [document_sink, search_sink, *extra_sinks]
        names = [sink.name for sink in self._sinks]
        if len(set(names)) != len(names):
            raise ValueError(f"sink names must be unique: {names}")
        self._writers = [ChunkedBatchWriter(sink, metrics=metrics) for sink in self._sinks]

    @property
    def sink_names(self) -> List[str]:
        return [sink.name for sink in self._sinks]

    def run(self, records: Sequence[NormalizedRecord], *, context: JobContext | None = None) -> FanoutReport:
        shared = tuple(records)
        report = FanoutReport()
        failures: Dict[str, BaseException] = {}
        cancelled: JobCancelled | None = None
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(self._writers),
            thread_name_prefix="sink",
        ) as executor:
            futures = [
                (writer.sink.name, executor.submit(writer.write, shared, context=context))
                for writer in self._writers
            ]
            for name, future in futures:
                try:
                    report.sinks[name] = future.result()
                except JobCancelled as exc:
                    cancelled = cancelled or exc
                except Exception as exc:
                    LOGGER.error("fanout.pipeline_failed", extra={"sink": name, "error": str(exc)}, exc_info=True)
                    failures[name] = exc
        if cancelled is not None:
            raise cancelled
        if failures:
            raise SinkPipelineError(failures)
        return report


__all__ = ["DualSinkFanout"]

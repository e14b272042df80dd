from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from statistics import mean
from threading import RLock
from typing import Dict, Iterable, List

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

LOGGER = logging.getLogger("cityindex")


@dataclass(slots=True)
class _PrometheusHandles:
    jobs: Counter
    records: Counter
    chunk_writes: Counter
    chunk_latency: Histogram
    batch_retries: Counter
    job_latency: Histogram


@dataclass(slots=True)
class MetricsRecorder:
    """In-memory ingestion metrics with optional Prometheus export."""

    namespace: str = "cityindex"
    enable_prometheus: bool = False
    exporter_port: int | None = None
    exporter_address: str = "0.0.0.0"
    registry: CollectorRegistry | None = None
    jobs_by_state: Dict[str, int] = field(default_factory=dict)
    records_ingested: int = 0
    chunk_writes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    batch_retry_items: int = 0
    job_latency_ms: List[float] = field(default_factory=list)
    _prometheus: _PrometheusHandles | None = field(init=False, default=None)
    _exporter_started: bool = field(init=False, default=False)
    _lock: RLock = field(init=False, default_factory=RLock)

    def __post_init__(self) -> None:
        if not self.enable_prometheus:
            return
        if self.registry is None:
            self.registry = CollectorRegistry()
        prefix = self.namespace.replace("-", "_")
        self._prometheus = _PrometheusHandles(
            jobs=Counter(
                f"{prefix}_ingestion_jobs_total",
                "Ingestion jobs by final state.",
                labelnames=("state",),
                registry=self.registry,
            ),
            records=Counter(
                f"{prefix}_records_ingested_total",
                "Records handed to the sink pipelines.",
                registry=self.registry,
            ),
            chunk_writes=Counter(
                f"{prefix}_chunk_writes_total",
                "Chunk writes by sink and outcome.",
                labelnames=("sink", "outcome"),
                registry=self.registry,
            ),
            chunk_latency=Histogram(
                f"{prefix}_chunk_write_latency_seconds",
                "Chunk write latency distribution.",
                labelnames=("sink",),
                buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
                registry=self.registry,
            ),
            batch_retries=Counter(
                f"{prefix}_batch_write_retried_items_total",
                "Items re-driven after a wide-column batch write left them unprocessed.",
                registry=self.registry,
            ),
            job_latency=Histogram(
                f"{prefix}_job_latency_seconds",
                "End-to-end running-phase latency.",
                buckets=(0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
                registry=self.registry,
            ),
        )
        if self.exporter_port is not None:
            try:
                start_http_server(self.exporter_port, addr=self.exporter_address, registry=self.registry)
            except OSError as exc:  # pragma: no cover - I/O errors are environment specific
                LOGGER.warning(
                    "prometheus.exporter_start_failed",
                    extra={"error": str(exc), "port": self.exporter_port},
                )
            else:
                self._exporter_started = True

    def record_job(self, state: str, *, record_count: int = 0, latency_ms: float | None = None) -> None:
        LOGGER.info("ingestion.job", extra={"state": state, "record_count": record_count, "latency_ms": latency_ms})
        with self._lock:
            self.jobs_by_state[state] = self.jobs_by_state.get(state, 0) + 1
            self.records_ingested += record_count
            if latency_ms is not None:
                self.job_latency_ms.append(latency_ms)
        if self._prometheus:
            self._prometheus.jobs.labels(state=state).inc()
            if record_count:
                self._prometheus.records.inc(record_count)
            if latency_ms is not None:
                self._prometheus.job_latency.observe(latency_ms / 1000.0)

    def record_chunk(self, sink: str, size: int, *, succeeded: bool, latency_ms: float | None = None) -> None:
        outcome = "succeeded" if succeeded else "failed"
        with self._lock:
            counts = self.chunk_writes.setdefault(sink, {"succeeded": 0, "failed": 0})
            counts[outcome] += 1
        if self._prometheus:
            self._prometheus.chunk_writes.labels(sink=sink, outcome=outcome).inc()
            if latency_ms is not None:
                self._prometheus.chunk_latency.labels(sink=sink).observe(latency_ms / 1000.0)

    def record_batch_retry(self, item_count: int) -> None:
        LOGGER.info("batch_write.retry", extra={"item_count": item_count})
        with self._lock:
            self.batch_retry_items += item_count
        if self._prometheus:
            self._prometheus.batch_retries.inc(item_count)

    @property
    def exporter_running(self) -> bool:
        return self._exporter_started

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "jobs": dict(self.jobs_by_state),
                "records_ingested": self.records_ingested,
                "chunk_writes": {sink: dict(counts) for sink, counts in self.chunk_writes.items()},
                "batch_retry_items": self.batch_retry_items,
                "job_latency_ms": self._latency_summary(self.job_latency_ms),
                "exporter": {
                    "enabled": bool(self._prometheus),
                    "running": self._exporter_started,
                    "port": self.exporter_port if self._exporter_started else None,
                },
            }

    def _latency_summary(self, values: Iterable[float]) -> Dict[str, float | int]:
        data = sorted(values)
        if not data:
            return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
        return {
            "count": len(data),
            "avg": float(mean(data)),
            "p50": float(self._percentile(data, 0.5)),
            "p95": float(self._percentile(data, 0.95)),
            "max": float(data[-1]),
        }

    @staticmethod
    def _percentile(data: List[float], percentile: float) -> float:
        if percentile <= 0:
            return float(data[0])
        if percentile >= 1:
            return float(data[-1])
        index = percentile * (len(data) - 1)
        lower = int(index)
        upper = min(lower + 1, len(data) - 1)
        weight = index - lower
        return float(data[lower] * (1 - weight) + data[upper] * weight)


class AuditLogger:
    """Structured audit lines for the ingestion job lifecycle."""

    def job_created(self, job_id: str, *, record_count: int) -> None:
        LOGGER.info(
            "audit.job_created",
            extra={"job_id": job_id, "record_count": record_count, "timestamp": _now()},
        )

    def job_finished(self, job_id: str, *, state: str, sinks: Dict[str, Dict[str, object]]) -> None:
        LOGGER.info(
            "audit.job_finished",
            extra={"job_id": job_id, "state": state, "sinks": sinks, "timestamp": _now()},
        )

    def job_failed(self, job_id: str, *, state: str, error: str) -> None:
        LOGGER.warning(
            "audit.job_failed",
            extra={"job_id": job_id, "state": state, "error": error, "timestamp": _now()},
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


__all__ = ["AuditLogger", "MetricsRecorder"]

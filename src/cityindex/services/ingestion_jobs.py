from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import RLock
from time import perf_counter
from typing import Dict, List, Protocol

from ..errors import JobCancelled
from ..ids.base import IdAssigner, acquire_ids
from ..ingestion.normalizer import build_records, normalize_records, parse_upload
from ..models.common import (
    IngestionJobRecord,
    JobAcknowledgement,
    JobContext,
    JobState,
    PreparedJob,
)
from ..storage.job_log import IngestionJobLog
from ..storage.job_status import JobStatusStore
from ..telemetry.logger import AuditLogger, MetricsRecorder
from .fanout import DualSinkFanout


class IngestionTaskDispatcher(Protocol):
    # False when the running phase executes in another process (RQ workers).
    runs_in_process: bool

    def enqueue(self, job: PreparedJob) -> None:
        ...

    def cancel(self, job_id: str) -> bool:
        ...


class IngestionJobCoordinator:
    """Drives one upload through created -> running -> completed/partial/failed/cancelled.

    Parsing, normalization and id assignment happen before the job exists
    anywhere; a failure there leaves no row and no flag behind. Once the job
    is running, its active flag is held by ``JobStatusStore.active`` and is
    released on every exit path.
    """

    def __init__(
        self,
        *,
        id_assigner: IdAssigner,
        job_status: JobStatusStore,
        job_log: IngestionJobLog,
        fanout: DualSinkFanout,
        metrics: MetricsRecorder,
        audit_logger: AuditLogger,
        task_dispatcher: IngestionTaskDispatcher | None = None,
        id_block_size: int = 1000,
        id_max_workers: int = 4,
        id_timeout: float | None = None,
        deadline_seconds: float | None = None,
        stale_after_seconds: float = 7200.0,
    ) -> None:
        self._id_assigner = id_assigner
        self._job_status = job_status
        self._job_log = job_log
        self._fanout = fanout
        self._metrics = metrics
        self._audit_logger = audit_logger
        self._task_dispatcher = task_dispatcher
        self._id_block_size = id_block_size
        self._id_max_workers = id_max_workers
        self._id_timeout = id_timeout
        self._deadline_seconds = deadline_seconds
        self._stale_after_seconds = stale_after_seconds
        self._contexts: Dict[str, JobContext] = {}
        self._lock = RLock()
        self._logger = logging.getLogger(__name__)

    # -- public API -----------------------------------------------------

    def prepare(self, payload: bytes | str) -> PreparedJob:
        """Obtain the job id, parse the upload, normalize and assign record ids."""
        job_id = str(acquire_ids(self._id_assigner, 1, timeout=self._id_timeout)[0])
        raw_records = parse_upload(payload)
        normalized = normalize_records(raw_records)
        ids = acquire_ids(
            self._id_assigner,
            len(normalized),
            block_size=self._id_block_size,
            max_workers=self._id_max_workers,
            timeout=self._id_timeout,
        )
        records = build_records(normalized, ids)
        self._logger.info("ingestion.job_prepared", extra={"job_id": job_id, "record_count": len(records)})
        return PreparedJob(job_id=job_id, records=records)

    def submit(self, payload: bytes | str) -> JobAcknowledgement:
        """Create the job and hand its running phase to the dispatcher.

        Without a dispatcher the running phase executes inline and the
        acknowledgement carries the final state.
        """
        job = self.prepare(payload)
        self._job_log.create(job.job_id, record_count=len(job.records))
        self._audit_logger.job_created(job.job_id, record_count=len(job.records))
        self._start(job, local=self._runs_in_process())
        if self._task_dispatcher is None:
            record = self.run_job(job)
            return JobAcknowledgement(job.job_id, record.state, len(job.records), message="job finished")
        try:
            self._task_dispatcher.enqueue(job)
        except Exception as exc:
            self._abort(job.job_id, f"dispatch failed: {exc}", JobState.FAILED)
            raise
        return JobAcknowledgement(job.job_id, JobState.RUNNING, len(job.records))

    def ingest(self, payload: bytes | str) -> IngestionJobRecord:
        """Synchronous submit + run, regardless of the configured dispatcher."""
        job = self.prepare(payload)
        self._job_log.create(job.job_id, record_count=len(job.records))
        self._audit_logger.job_created(job.job_id, record_count=len(job.records))
        self._start(job, local=True)
        return self.run_job(job)

    def run_job(self, job: PreparedJob) -> IngestionJobRecord:
        context = self._context_for(job.job_id)
        started = perf_counter()
        try:
            with self._job_status.active(job.job_id):
                context.check()
                existing = self._job_log.get(job.job_id)
                if existing is None:
                    self._job_log.create(job.job_id, record_count=len(job.records))
                if existing is None or existing.state != JobState.RUNNING:
                    self._job_log.mark_running(job.job_id)
                report = self._fanout.run(job.records, context=context)
                record = self._job_log.complete(job.job_id, report.to_dict())
        except JobCancelled as exc:
            record = self._job_log.fail(job.job_id, str(exc), state=JobState.CANCELLED)
            self._metrics.record_job(record.state.value, latency_ms=(perf_counter() - started) * 1000.0)
            self._audit_logger.job_failed(job.job_id, state=record.state.value, error=str(exc))
            return record
        except Exception as exc:
            self._job_log.fail(job.job_id, f"{type(exc).__name__}: {exc}")
            self._metrics.record_job(JobState.FAILED.value, latency_ms=(perf_counter() - started) * 1000.0)
            self._audit_logger.job_failed(job.job_id, state=JobState.FAILED.value, error=str(exc))
            raise
        finally:
            with self._lock:
                self._contexts.pop(job.job_id, None)
        self._metrics.record_job(
            record.state.value,
            record_count=len(job.records),
            latency_ms=(perf_counter() - started) * 1000.0,
        )
        self._audit_logger.job_finished(job.job_id, state=record.state.value, sinks=record.sinks)
        return record

    def get_job(self, job_id: str) -> IngestionJobRecord | None:
        return self._job_log.get(job_id)

    def list_jobs(self, *, limit: int = 50) -> List[IngestionJobRecord]:
        return self._job_log.list(limit=limit)

    def is_active(self, job_id: str) -> bool:
        return self._job_status.is_active(job_id)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            context = self._contexts.get(job_id)
        if context is not None:
            context.cancel()
            self._logger.info("ingestion.cancel_requested", extra={"job_id": job_id})
            return True
        if self._task_dispatcher is not None and self._task_dispatcher.cancel(job_id):
            self._abort(job_id, "cancelled before start", JobState.CANCELLED)
            return True
        return False

    def reconcile_stale_jobs(self) -> Dict[str, List[str]]:
        """Crash-recovery sweep reconciling active flags with the job log."""
        cleared: List[str] = []
        failed: List[str] = []
        with self._lock:
            live = set(self._contexts)
        for job_id in self._job_status.active_job_ids():
            if job_id in live:
                continue
            record = self._job_log.get(job_id)
            if record is None or record.state.terminal:
                self._job_status.clear_active(job_id)
                cleared.append(job_id)
        now = datetime.now(timezone.utc)
        for record in self._job_log.list(limit=1000, states=(JobState.CREATED, JobState.RUNNING)):
            if record.job_id in live:
                continue
            age = (now - record.updated_at).total_seconds()
            if self._job_status.is_active(record.job_id) and age < self._stale_after_seconds:
                continue
            self._abort(record.job_id, "abandoned: no live worker held the job", JobState.FAILED)
            failed.append(record.job_id)
        if cleared or failed:
            self._logger.warning("ingestion.stale_jobs_swept", extra={"cleared_flags": cleared, "failed_jobs": failed})
        return {"cleared_flags": cleared, "failed_jobs": failed}

    # -- internal helpers ----------------------------------------------

    def _runs_in_process(self) -> bool:
        if self._task_dispatcher is None:
            return True
        return bool(getattr(self._task_dispatcher, "runs_in_process", False))

    def _start(self, job: PreparedJob, *, local: bool) -> None:
        if local:
            with self._lock:
                self._contexts[job.job_id] = JobContext(job.job_id, deadline_seconds=self._deadline_seconds)
        try:
            self._job_status.set_active(job.job_id)
            self._job_log.mark_running(job.job_id)
        except Exception as exc:
            self._abort(job.job_id, f"could not start: {exc}", JobState.FAILED)
            raise

    def _abort(self, job_id: str, error: str, state: JobState) -> None:
        with self._lock:
            self._contexts.pop(job_id, None)
        try:
            self._job_status.clear_active(job_id)
        finally:
            self._job_log.fail(job_id, error, state=state)
            self._metrics.record_job(state.value)
            self._audit_logger.job_failed(job_id, state=state.value, error=error)

    def _context_for(self, job_id: str) -> JobContext:
        with self._lock:
            context = self._contexts.get(job_id)
            if context is None:
                context = JobContext(job_id, deadline_seconds=self._deadline_seconds)
                self._contexts[job_id] = context
            return context


__all__ = ["IngestionJobCoordinator", "IngestionTaskDispatcher"]

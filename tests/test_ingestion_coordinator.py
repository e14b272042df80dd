import json
import sqlite3
import threading

import pytest

from cityindex.errors import DispatchBackpressure, IdServiceUnavailable, MalformedRecordError, SinkPipelineError
from cityindex.ids.base import IdAssigner
from cityindex.ids.snowflake import SnowflakeIdAssigner
from cityindex.models.common import JobState
from cityindex.services.fanout import DualSinkFanout
from cityindex.services.ingestion_jobs import IngestionJobCoordinator
from cityindex.sinks.base import RecordSink
from cityindex.sinks.document_store import InMemoryDocumentSink
from cityindex.sinks.search_index import InMemorySearchIndex
from cityindex.storage.job_log import IngestionJobLog
from cityindex.storage.job_status import InMemoryJobStatusStore
from cityindex.telemetry.logger import AuditLogger, MetricsRecorder
from cityindex.workers.dispatcher import ThreadIngestionTaskDispatcher


class _FlagWatchingSink(RecordSink):
    """Search-side sink that records whether the job flag is set while it writes."""

    name = "search"

    def __init__(self, job_status):
        self.chunk_size = 1000
        self._job_status = job_status
        self.observed = []

    def write_chunk(self, chunk, *, context=None):
        self.observed.append(self._job_status.is_active(context.job_id))


class _SlowSink(RecordSink):
    name = "search"
    chunk_size = 1

    def __init__(self):
        self.started = threading.Event()

    def write_chunk(self, chunk, *, context=None):
        self.started.set()
        context.sleep(0.05)


class _MisconfiguredSink(RecordSink):
    name = "search"
    chunk_size = 0

    def write_chunk(self, chunk, *, context=None):
        raise AssertionError("never reached")


class _BrokenAssigner(IdAssigner):
    def next_id(self):
        raise OSError("id service down")


class _RejectingDispatcher:
    def enqueue(self, job):
        raise DispatchBackpressure("ingestion queue backpressure: too many pending jobs")

    def cancel(self, job_id):
        return False


class _QueueDispatcher:
    """Hands jobs to another process; only still-queued jobs can be withdrawn."""

    runs_in_process = False

    def __init__(self):
        self.queued = []
        self.cancel_calls = []

    def enqueue(self, job):
        self.queued.append(job.job_id)

    def cancel(self, job_id):
        self.cancel_calls.append(job_id)
        if job_id not in self.queued:
            return False
        self.queued.remove(job_id)
        return True


def _coordinator(*, search_sink=None, documents=None, job_status=None, dispatcher=None, id_assigner=None):
    job_status = job_status if job_status is not None else InMemoryJobStatusStore()
    documents = documents if documents is not None else InMemoryDocumentSink()
    search_sink = search_sink if search_sink is not None else InMemorySearchIndex()
    job_log = IngestionJobLog(connection=sqlite3.connect(":memory:", check_same_thread=False))
    metrics = MetricsRecorder()
    coordinator = IngestionJobCoordinator(
        id_assigner=id_assigner or SnowflakeIdAssigner(worker_id=3),
        job_status=job_status,
        job_log=job_log,
        fanout=DualSinkFanout(document_sink=documents, search_sink=search_sink, metrics=metrics),
        metrics=metrics,
        audit_logger=AuditLogger(),
        task_dispatcher=dispatcher,
        deadline_seconds=60,
    )
    return coordinator, job_status, job_log, metrics


def test_1500_records_end_to_end(city_payload):
    documents = InMemoryDocumentSink()
    search = InMemorySearchIndex()
    coordinator, job_status, _, metrics = _coordinator(documents=documents, search_sink=search)

    record = coordinator.ingest(city_payload(1500))

    assert record.state is JobState.COMPLETED
    assert record.record_count == 1500
    assert documents.insert_calls == 2
    assert [len(actions) // 2 for actions in search.bulk_calls] == [1000, 500]
    ids = [document["n_id"] for document in sorted(documents.find(), key=lambda doc: doc["codgeo"])]
    assert len(set(ids)) == 1500
    assert ids == sorted(ids)
    assert str(ids[0]) != record.job_id
    assert search.get(ids[0])["insee_code"] == "00000"
    assert not job_status.is_active(record.job_id)
    assert record.sinks["documents"]["written_records"] == 1500
    assert metrics.snapshot()["jobs"] == {"completed": 1}


def test_flag_is_held_while_pipelines_write():
    job_status = InMemoryJobStatusStore()
    watcher = _FlagWatchingSink(job_status)
    coordinator, _, _, _ = _coordinator(search_sink=watcher, job_status=job_status)

    record = coordinator.ingest(json.dumps([{"Nom Com": "Pau"}] * 1200))

    assert watcher.observed == [True, True]
    assert not job_status.is_active(record.job_id)
    assert job_status.active_job_ids() == []


def test_pipeline_crash_fails_the_job_and_clears_the_flag():
    coordinator, job_status, job_log, _ = _coordinator(search_sink=_MisconfiguredSink())
    with pytest.raises(SinkPipelineError):
        coordinator.ingest(json.dumps([{"Nom Com": "Pau"}]))
    (job,) = job_log.list()
    assert job.state is JobState.FAILED
    assert "SinkPipelineError" in job.error
    assert job_status.active_job_ids() == []


def test_malformed_upload_leaves_no_trace():
    coordinator, job_status, job_log, _ = _coordinator()
    with pytest.raises(MalformedRecordError):
        coordinator.submit(b'{"not": "an array"}')
    assert job_log.list() == []
    assert job_status.active_job_ids() == []


def test_id_outage_aborts_before_the_job_exists():
    coordinator, job_status, job_log, _ = _coordinator(id_assigner=_BrokenAssigner())
    with pytest.raises(IdServiceUnavailable):
        coordinator.submit(json.dumps([{"Nom Com": "Pau"}]))
    assert job_log.list() == []
    assert job_status.active_job_ids() == []


def test_background_job_acknowledges_then_completes(city_payload):
    dispatcher = ThreadIngestionTaskDispatcher(max_active_jobs=1)
    coordinator, job_status, _, _ = _coordinator(dispatcher=dispatcher)
    dispatcher.bind(coordinator.run_job)

    ack = coordinator.submit(city_payload(10))
    assert ack.state is JobState.RUNNING
    assert ack.record_count == 10

    dispatcher.wait(timeout=5)
    assert coordinator.get_job(ack.job_id).state is JobState.COMPLETED
    assert not job_status.is_active(ack.job_id)
    dispatcher.shutdown()


def test_cancelled_job_clears_its_flag(city_payload):
    slow = _SlowSink()
    dispatcher = ThreadIngestionTaskDispatcher(max_active_jobs=1)
    coordinator, job_status, _, metrics = _coordinator(search_sink=slow, dispatcher=dispatcher)
    dispatcher.bind(coordinator.run_job)

    ack = coordinator.submit(city_payload(200))
    assert slow.started.wait(timeout=5)
    assert coordinator.cancel(ack.job_id) is True
    dispatcher.wait(timeout=5)

    job = coordinator.get_job(ack.job_id)
    assert job.state is JobState.CANCELLED
    assert not job_status.is_active(ack.job_id)
    assert metrics.snapshot()["jobs"] == {"cancelled": 1}
    assert coordinator.cancel(ack.job_id) is False
    dispatcher.shutdown()


def test_dispatch_failure_marks_the_job_failed(city_payload):
    coordinator, job_status, job_log, _ = _coordinator(dispatcher=_RejectingDispatcher())
    with pytest.raises(DispatchBackpressure):
        coordinator.submit(city_payload(3))
    (job,) = job_log.list()
    assert job.state is JobState.FAILED
    assert job_status.active_job_ids() == []


def test_reconcile_clears_stale_flags_and_abandoned_jobs():
    coordinator, job_status, job_log, _ = _coordinator()
    job_log.create("done", record_count=1)
    job_log.complete("done", {})
    job_status.set_active("done")
    job_status.set_active("ghost")
    job_log.create("orphan", record_count=1)
    job_log.mark_running("orphan")

    summary = coordinator.reconcile_stale_jobs()

    assert sorted(summary["cleared_flags"]) == ["done", "ghost"]
    assert summary["failed_jobs"] == ["orphan"]
    assert job_status.active_job_ids() == []
    assert job_log.get("orphan").state is JobState.FAILED


def test_cancel_withdraws_a_job_still_in_the_worker_queue(city_payload):
    dispatcher = _QueueDispatcher()
    coordinator, job_status, _, metrics = _coordinator(dispatcher=dispatcher)

    ack = coordinator.submit(city_payload(5))
    assert dispatcher.queued == [ack.job_id]

    assert coordinator.cancel(ack.job_id) is True
    assert dispatcher.cancel_calls == [ack.job_id]
    assert dispatcher.queued == []
    assert coordinator.get_job(ack.job_id).state is JobState.CANCELLED
    assert not job_status.is_active(ack.job_id)
    assert metrics.snapshot()["jobs"] == {"cancelled": 1}


def test_cancel_reports_false_once_a_worker_owns_the_job(city_payload):
    dispatcher = _QueueDispatcher()
    coordinator, job_status, _, _ = _coordinator(dispatcher=dispatcher)

    ack = coordinator.submit(city_payload(5))
    dispatcher.queued.clear()

    assert coordinator.cancel(ack.job_id) is False
    assert dispatcher.cancel_calls == [ack.job_id]
    assert coordinator.get_job(ack.job_id).state is JobState.RUNNING
    assert job_status.is_active(ack.job_id)


def test_reconcile_sweeps_worker_jobs_that_lost_their_flag(city_payload):
    dispatcher = _QueueDispatcher()
    coordinator, job_status, job_log, _ = _coordinator(dispatcher=dispatcher)

    ack = coordinator.submit(city_payload(5))
    assert coordinator.reconcile_stale_jobs() == {"cleared_flags": [], "failed_jobs": []}

    job_status.clear_active(ack.job_id)
    summary = coordinator.reconcile_stale_jobs()

    assert summary["failed_jobs"] == [ack.job_id]
    assert job_log.get(ack.job_id).state is JobState.FAILED

import sqlite3

import pytest

from cityindex.models.common import JobState
from cityindex.storage.job_log import IngestionJobLog


@pytest.fixture
def job_log():
    return IngestionJobLog(connection=sqlite3.connect(":memory:", check_same_thread=False))


def test_job_row_walks_through_states(job_log):
    created = job_log.create("100", record_count=3)
    assert created.state is JobState.CREATED

    assert job_log.mark_running("100").state is JobState.RUNNING

    sinks = {"documents": {"chunks": 1, "failed_chunks": 0}, "search": {"chunks": 1, "failed_chunks": 0}}
    finished = job_log.complete("100", sinks)
    assert finished.state is JobState.COMPLETED
    assert finished.sinks == sinks
    assert job_log.get("100").record_count == 3


def test_failed_chunks_make_the_job_partial(job_log):
    job_log.create("200", record_count=1500)
    job_log.mark_running("200")
    record = job_log.complete("200", {"documents": {"failed_chunks": 1}, "search": {"failed_chunks": 0}})
    assert record.state is JobState.PARTIAL


def test_fail_records_error_and_state(job_log):
    job_log.create("300", record_count=1)
    record = job_log.fail("300", "cancelled", state=JobState.CANCELLED)
    assert record.state is JobState.CANCELLED
    assert record.error == "cancelled"
    assert record.state.terminal


def test_unknown_job(job_log):
    assert job_log.get("missing") is None
    with pytest.raises(KeyError):
        job_log.mark_running("missing")


class _VanishingJobLog(IngestionJobLog):
    """Row deleted by another writer between the update and the re-read."""

    def get(self, job_id):
        return None


def test_row_gone_after_update_raises_key_error():
    job_log = _VanishingJobLog(connection=sqlite3.connect(":memory:", check_same_thread=False))
    job_log.create("1", record_count=1)
    with pytest.raises(KeyError, match="job 1 not found"):
        job_log.mark_running("1")


def test_list_filters_by_state(job_log):
    job_log.create("1", record_count=1)
    job_log.create("2", record_count=1)
    job_log.mark_running("2")
    running = job_log.list(states=[JobState.RUNNING])
    assert [record.job_id for record in running] == ["2"]
    assert {record.job_id for record in job_log.list()} == {"1", "2"}

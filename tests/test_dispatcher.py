import threading

import pytest

from cityindex.errors import DispatchBackpressure
from cityindex.models.common import NormalizedRecord, PreparedJob
from cityindex.workers.dispatcher import ThreadIngestionTaskDispatcher


def _job(job_id):
    return PreparedJob(job_id=job_id, records=(NormalizedRecord(id=1, fields={"nom_com": "Pau"}),))


def test_full_thread_queue_raises_backpressure():
    release = threading.Event()
    dispatcher = ThreadIngestionTaskDispatcher(lambda job: release.wait(5), max_active_jobs=1, max_queue_length=1)
    try:
        dispatcher.enqueue(_job("1"))
        with pytest.raises(DispatchBackpressure):
            dispatcher.enqueue(_job("2"))
    finally:
        release.set()
        dispatcher.shutdown()


def test_unbound_dispatcher_is_a_programming_error_not_backpressure():
    dispatcher = ThreadIngestionTaskDispatcher()
    try:
        with pytest.raises(RuntimeError) as excinfo:
            dispatcher.enqueue(_job("1"))
        assert not isinstance(excinfo.value, DispatchBackpressure)
    finally:
        dispatcher.shutdown()

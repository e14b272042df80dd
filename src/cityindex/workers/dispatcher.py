from __future__ import annotations

import concurrent.futures
import logging
from threading import RLock
from typing import Callable, Dict, List, Sequence

import redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from ..errors import DispatchBackpressure
from ..models.common import NormalizedRecord, PreparedJob
from ..services.ingestion_jobs import IngestionTaskDispatcher

LOGGER = logging.getLogger("cityindex.workers")

TASK_PATH = "cityindex.workers.tasks.run_ingestion_job"


class ThreadIngestionTaskDispatcher(IngestionTaskDispatcher):
    """Runs the running phase of each job on a bounded in-process thread pool."""

    runs_in_process = True

    def __init__(
        self,
        runner: Callable[[PreparedJob], object] | None = None,
        *,
        max_active_jobs: int = 2,
        max_queue_length: int | None = None,
    ) -> None:
        self._runner = runner
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, max_active_jobs),
            thread_name_prefix="ingestion-job",
        )
        self._max_queue_length = max_queue_length if max_queue_length and max_queue_length > 0 else None
        self._futures: Dict[str, concurrent.futures.Future] = {}
        self._lock = RLock()

    def bind(self, runner: Callable[[PreparedJob], object]) -> None:
        self._runner = runner

    def can_accept(self, count: int = 1) -> bool:
        if self._max_queue_length is None:
            return True
        with self._lock:
            pending = sum(1 for future in self._futures.values() if not future.done())
        return pending + max(count, 0) <= self._max_queue_length

    def enqueue(self, job: PreparedJob) -> None:
        if self._runner is None:
            raise RuntimeError("dispatcher has no job runner bound")
        if not self.can_accept(1):
            raise DispatchBackpressure("ingestion queue backpressure: too many pending jobs")
        future = self._executor.submit(self._runner, job)
        with self._lock:
            self._futures[job.job_id] = future
        future.add_done_callback(lambda done, job_id=job.job_id: self._finished(job_id, done))

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
        return bool(future is not None and future.cancel())

    def wait(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._futures.values())
        concurrent.futures.wait(pending, timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _finished(self, job_id: str, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            LOGGER.error(
                "ingestion.job_crashed",
                extra={"job_id": job_id, "error": str(error)},
                exc_info=(type(error), error, error.__traceback__),
            )


class RQIngestionTaskDispatcher(IngestionTaskDispatcher):
    """Dispatch prepared ingestion jobs to an RQ queue."""

    runs_in_process = False

    def __init__(
        self,
        *,
        redis_url: str,
        queue_name: str = "ingestion",
        default_timeout: int = 3600,
        max_queue_length: int | None = None,
    ) -> None:
        self._redis = redis.Redis.from_url(redis_url)
        self._queue = Queue(queue_name, connection=self._redis, default_timeout=default_timeout)
        self._max_queue_length = max_queue_length if max_queue_length and max_queue_length > 0 else None

    def can_accept(self, count: int = 1) -> bool:
        if self._max_queue_length is None:
            return True
        try:
            queued = int(self._queue.count)
        except redis.RedisError:
            return True
        return queued + max(count, 0) <= self._max_queue_length

    def enqueue(self, job: PreparedJob) -> None:
        if not self.can_accept(1):
            raise DispatchBackpressure("ingestion queue backpressure: too many queued jobs")
        self._queue.enqueue(
            TASK_PATH,
            kwargs={"job_id": job.job_id, "records": serialize_records(job.records)},
            job_id=f"ingest-{job.job_id}",
            meta={"record_count": len(job.records)},
        )

    def cancel(self, job_id: str) -> bool:
        try:
            queued = Job.fetch(f"ingest-{job_id}", connection=self._redis)
        except NoSuchJobError:
            return False
        if queued.get_status(refresh=True) != "queued":
            return False
        queued.cancel()
        return True


def serialize_records(records: Sequence[NormalizedRecord]) -> List[Dict[str, object]]:
    return [{"id": record.id, "fields": dict(record.fields)} for record in records]


def deserialize_records(payload: Sequence[Dict[str, object]]) -> tuple[NormalizedRecord, ...]:
    return tuple(NormalizedRecord(id=int(item["id"]), fields=dict(item["fields"])) for item in payload)


__all__ = [
    "RQIngestionTaskDispatcher",
    "ThreadIngestionTaskDispatcher",
    "deserialize_records",
    "serialize_records",
]

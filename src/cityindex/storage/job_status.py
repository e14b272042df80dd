from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from threading import RLock
from typing import Iterator, List, Set

LOGGER = logging.getLogger("cityindex.job_status")


class JobStatusStore(ABC):
    """Ephemeral per-job "in flight" flags."""

    @abstractmethod
    def set_active(self, job_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_active(self, job_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def is_active(self, job_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def active_job_ids(self) -> List[str]:
        raise NotImplementedError

    @contextmanager
    def active(self, job_id: str) -> Iterator[None]:
        """Hold the active flag for the duration of the block, released on every exit path."""
        self.set_active(job_id)
        try:
            yield
        finally:
            try:
                self.clear_active(job_id)
            except Exception:
                LOGGER.error("job_status.clear_failed", extra={"job_id": job_id}, exc_info=True)
                raise


class InMemoryJobStatusStore(JobStatusStore):
    """Thread-safe flag set for development, tests and single-process deployments."""

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._lock = RLock()

    def set_active(self, job_id: str) -> None:
        with self._lock:
            self._active.add(job_id)

    def clear_active(self, job_id: str) -> None:
        with self._lock:
            self._active.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def active_job_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active)


class RedisJobStatusStore(JobStatusStore):
    """Flags stored as ``<namespace>:job:<job_id>`` keys, optionally with a TTL."""

    def __init__(self, client: object, *, namespace: str = "cityindex", ttl_seconds: int | None = None) -> None:
        self._client = client
        self._prefix = f"{namespace.rstrip(':') or 'cityindex'}:job:"
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None

    def set_active(self, job_id: str) -> None:
        self._client.set(self._key(job_id), 1, ex=self._ttl)

    def clear_active(self, job_id: str) -> None:
        self._client.delete(self._key(job_id))

    def is_active(self, job_id: str) -> bool:
        return bool(self._client.exists(self._key(job_id)))

    def active_job_ids(self) -> List[str]:
        job_ids = []
        for key in self._client.scan_iter(f"{self._prefix}*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            job_ids.append(key[len(self._prefix) :])
        return sorted(job_ids)

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"


__all__ = ["InMemoryJobStatusStore", "JobStatusStore", "RedisJobStatusStore"]

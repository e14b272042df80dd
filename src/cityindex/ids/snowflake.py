from __future__ import annotations

import threading
import time
from typing import Callable, List

from ..errors import IdServiceUnavailable
from .base import IdAssigner

TIMESTAMP_BITS = 41
WORKER_BITS = 10
SEQUENCE_BITS = 12

MAX_WORKER_ID = (1 << WORKER_BITS) - 1
MAX_SEQUENCE = (1 << SEQUENCE_BITS) - 1
WORKER_SHIFT = SEQUENCE_BITS
TIMESTAMP_SHIFT = SEQUENCE_BITS + WORKER_BITS


class SnowflakeIdAssigner(IdAssigner):
    """Twitter-style snowflake ids: 41-bit ms timestamp | 10-bit worker | 12-bit sequence.

    Ids are strictly increasing within one process and unique across a fleet
    as long as every process runs with a distinct ``worker_id``.
    """

    def __init__(
        self,
        *,
        worker_id: int = 1,
        epoch_ms: int = 1420070400000,
        lock_timeout: float = 5.0,
        clock_tolerance_ms: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not 0 <= worker_id <= MAX_WORKER_ID:
            raise ValueError(f"worker_id must be within 0..{MAX_WORKER_ID}")
        self._worker_id = worker_id
        self._epoch_ms = epoch_ms
        self._lock_timeout = lock_timeout
        self._clock_tolerance_ms = clock_tolerance_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def next_id(self) -> int:
        return self.next_ids(1)[0]

    def next_ids(self, count: int) -> List[int]:
        if count <= 0:
            return []
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise IdServiceUnavailable(f"snowflake generator busy for more than {self._lock_timeout}s")
        try:
            return [self._generate() for _ in range(count)]
        finally:
            self._lock.release()

    def _generate(self) -> int:
        now = self._now_ms()
        if now < self._last_ms:
            drift = self._last_ms - now
            if drift > self._clock_tolerance_ms:
                raise IdServiceUnavailable(f"clock moved backwards by {drift}ms")
            now = self._wait_until(self._last_ms)
        if now == self._last_ms:
            self._sequence = (self._sequence + 1) & MAX_SEQUENCE
            if self._sequence == 0:
                now = self._wait_until(self._last_ms + 1)
        else:
            self._sequence = 0
        self._last_ms = now
        elapsed = now - self._epoch_ms
        if elapsed < 0 or elapsed >= (1 << TIMESTAMP_BITS):
            raise IdServiceUnavailable("clock outside of the snowflake epoch range")
        return (elapsed << TIMESTAMP_SHIFT) | (self._worker_id << WORKER_SHIFT) | self._sequence

    def _wait_until(self, target_ms: int) -> int:
        deadline = time.monotonic() + self._lock_timeout
        now = self._now_ms()
        while now < target_ms:
            if time.monotonic() >= deadline:
                raise IdServiceUnavailable("snowflake clock did not advance")
            time.sleep(0.0005)
            now = self._now_ms()
        return now

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)


def decode_snowflake(value: int, *, epoch_ms: int = 1420070400000) -> dict:
    return {
        "timestamp_ms": (value >> TIMESTAMP_SHIFT) + epoch_ms,
        "worker_id": (value >> WORKER_SHIFT) & MAX_WORKER_ID,
        "sequence": value & MAX_SEQUENCE,
    }


__all__ = ["SnowflakeIdAssigner", "decode_snowflake"]

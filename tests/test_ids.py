import threading
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cityindex.errors import IdServiceUnavailable
from cityindex.ids import IdAssigner, RedisCounterIdAssigner, SnowflakeIdAssigner, acquire_ids, decode_snowflake


def test_snowflake_ids_are_unique_and_increasing():
    assigner = SnowflakeIdAssigner(worker_id=7)
    ids = assigner.next_ids(6000)
    assert len(set(ids)) == 6000
    assert ids == sorted(ids)
    assert decode_snowflake(ids[0])["worker_id"] == 7


def test_snowflake_rejects_out_of_range_worker():
    with pytest.raises(ValueError):
        SnowflakeIdAssigner(worker_id=1024)


def test_snowflake_clock_regression_is_an_outage():
    ticks = iter([1_700_000_000.0, 1_699_999_999.0])
    assigner = SnowflakeIdAssigner(clock=lambda: next(ticks))
    assigner.next_id()
    with pytest.raises(IdServiceUnavailable):
        assigner.next_id()


def test_acquire_ids_returns_every_id_in_ascending_order():
    assigner = SnowflakeIdAssigner()
    ids = acquire_ids(assigner, 2500, block_size=1000, max_workers=3)
    assert len(ids) == 2500
    assert len(set(ids)) == 2500
    assert ids == sorted(ids)


def test_acquire_ids_for_zero_records():
    assert acquire_ids(SnowflakeIdAssigner(), 0) == []


class _BrokenAssigner(IdAssigner):
    def next_id(self) -> int:
        raise OSError("backend down")


class _HungAssigner(IdAssigner):
    """Backend whose block requests stall until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            self.calls += 1
            return self.calls

    def next_ids(self, count):
        self.release.wait(2.0)
        return [self.next_id() for _ in range(count)]


@pytest.fixture
def hung_assigner():
    assigner = _HungAssigner()
    yield assigner
    assigner.release.set()


def test_acquire_ids_wraps_backend_errors():
    with pytest.raises(IdServiceUnavailable):
        acquire_ids(_BrokenAssigner(), 10)


def test_single_block_request_honours_the_timeout(hung_assigner):
    started = time.monotonic()
    with pytest.raises(IdServiceUnavailable, match="timed out"):
        acquire_ids(hung_assigner, 5, block_size=10, timeout=0.1)
    assert time.monotonic() - started < 1.0


def test_multi_block_request_shares_one_timeout_budget(hung_assigner):
    started = time.monotonic()
    with pytest.raises(IdServiceUnavailable, match="timed out"):
        acquire_ids(hung_assigner, 40, block_size=10, max_workers=2, timeout=0.1)
    assert time.monotonic() - started < 1.0


def test_job_id_request_times_out_without_waiting_for_the_backend(hung_assigner):
    started = time.monotonic()
    with pytest.raises(IdServiceUnavailable):
        acquire_ids(hung_assigner, 1, timeout=0.1)
    assert time.monotonic() - started < 1.0


class _FakeRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.counters = {}
        self.fail = fail
        self._lock = threading.Lock()

    def incrby(self, key, amount):
        if self.fail:
            raise RedisConnectionError("connection refused")
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + amount
            return self.counters[key]


def test_redis_counter_hands_out_contiguous_blocks():
    client = _FakeRedis()
    assigner = RedisCounterIdAssigner(client, key="test:ids")
    assert assigner.next_ids(3) == [1, 2, 3]
    assert assigner.next_id() == 4
    assert acquire_ids(assigner, 25, block_size=10) == list(range(5, 30))


def test_redis_counter_outage_is_unavailable():
    assigner = RedisCounterIdAssigner(_FakeRedis(fail=True))
    with pytest.raises(IdServiceUnavailable):
        assigner.next_ids(5)

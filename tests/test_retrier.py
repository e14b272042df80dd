import math

import pytest
from botocore.exceptions import ClientError

from cityindex.errors import BatchWriteExhausted, SinkChunkWriteError
from cityindex.models.common import BatchChunk, NormalizedRecord
from cityindex.sinks.base import ChunkedBatchWriter
from cityindex.sinks.wide_column import (
    DynamoDBBatchWriter,
    UnprocessedItemRetrier,
    WideColumnSink,
    to_put_request,
)
from cityindex.telemetry.logger import MetricsRecorder


class _ScriptedStore:
    """Declines everything for the first ``declining_calls`` calls, then accepts."""

    def __init__(self, declining_calls=0):
        self.declining_calls = declining_calls
        self.calls = []
        self.accepted = []

    def __call__(self, batch):
        self.calls.append(list(batch))
        if len(self.calls) <= self.declining_calls:
            return list(batch)
        self.accepted.extend(batch)
        return []


def _retrier(store, **kwargs):
    kwargs.setdefault("sleep", lambda seconds: None)
    return UnprocessedItemRetrier(store, **kwargs)


@pytest.mark.parametrize("count", [1, 25, 26, 1000])
def test_first_pass_issues_one_call_per_25_items(count):
    store = _ScriptedStore()
    report = _retrier(store).write(list(range(count)))
    assert len(store.calls) == math.ceil(count / 25)
    assert all(len(call) <= 25 for call in store.calls)
    assert report.passes == 1
    assert report.written == count


def test_all_unprocessed_then_none_converges_in_two_calls_without_duplicates():
    store = _ScriptedStore(declining_calls=1)
    items = [f"item-{index}" for index in range(10)]
    report = _retrier(store).write(items)
    assert len(store.calls) == 2
    assert store.calls[1] == items
    assert sorted(store.accepted) == sorted(items)
    assert len(store.accepted) == len(set(store.accepted))
    assert report.passes == 2


def test_delays_follow_first_pass_then_retry_schedule():
    pauses = []
    store = _ScriptedStore(declining_calls=1)
    _retrier(store, sleep=pauses.append, first_pass_delay=1.0, retry_delay=2.0).write(list(range(5)))
    assert pauses == [1.0, 2.0]


def test_exhaustion_raises_with_the_unprocessed_items():
    store = _ScriptedStore(declining_calls=100)
    metrics = MetricsRecorder()
    with pytest.raises(BatchWriteExhausted) as excinfo:
        _retrier(store, max_passes=3, metrics=metrics).write(list(range(30)))
    assert len(store.calls) == 3 * 2
    assert sorted(excinfo.value.unprocessed) == list(range(30))
    assert excinfo.value.passes == 3
    assert metrics.snapshot()["batch_retry_items"] == 90


def test_elapsed_budget_stops_retrying():
    ticks = iter([0.0, 0.0, 500.0])
    store = _ScriptedStore(declining_calls=100)
    with pytest.raises(BatchWriteExhausted):
        _retrier(store, max_elapsed_seconds=120.0, clock=lambda: next(ticks)).write(list(range(3)))
    assert len(store.calls) == 1


def test_batch_size_is_capped_at_25():
    with pytest.raises(ValueError):
        UnprocessedItemRetrier(lambda batch: [], batch_size=26)


def test_put_request_uses_typed_attributes():
    record = NormalizedRecord(id=7, fields={"nom_com": "Pau", "geo_point": [43.3, -0.37], "population": 77000})
    request = to_put_request(record)
    item = request["PutRequest"]["Item"]
    assert item["id"] == {"N": "7"}
    assert item["nom_com"] == {"S": "Pau"}
    assert item["geo_point"] == {"L": [{"N": "43.3"}, {"N": "-0.37"}]}
    assert item["population"] == {"N": "77000"}


class _FakeDynamoClient:
    def __init__(self, unprocessed_first=True):
        self.requests = []
        self.unprocessed_first = unprocessed_first

    def batch_write_item(self, RequestItems, ReturnItemCollectionMetrics):
        assert ReturnItemCollectionMetrics == "SIZE"
        (table, writes), = RequestItems.items()
        self.requests.append(writes)
        if self.unprocessed_first and len(self.requests) == 1:
            return {"UnprocessedItems": {table: writes[:2]}}
        return {"UnprocessedItems": {}}


def test_wide_column_sink_redrives_only_unprocessed_requests():
    client = _FakeDynamoClient()
    retrier = _retrier(DynamoDBBatchWriter(client, table_name="cities"))
    sink = WideColumnSink(retrier)
    records = tuple(NormalizedRecord(id=index, fields={"nom_com": f"V{index}"}) for index in range(30))
    sink.write_chunk(BatchChunk(index=0, offset=0, records=records))
    assert [len(writes) for writes in client.requests] == [25, 5, 2]


def test_retry_passes_span_the_whole_job():
    client = _FakeDynamoClient()
    sink = WideColumnSink(_retrier(DynamoDBBatchWriter(client, table_name="cities")))
    records = tuple(NormalizedRecord(id=index, fields={"nom_com": f"V{index}"}) for index in range(1030))

    report = ChunkedBatchWriter(sink).write(records)

    assert report.written_records == 1030
    assert len(report.outcomes) == 1
    sizes = [len(writes) for writes in client.requests]
    assert sizes == [25] * 41 + [5, 2]
    assert client.requests[-1] == client.requests[0][:2]


class _FailingDynamoClient:
    def batch_write_item(self, **kwargs):
        raise ClientError({"Error": {"Code": "ValidationException", "Message": "bad"}}, "BatchWriteItem")


def test_wide_column_client_errors_become_chunk_failures():
    sink = WideColumnSink(_retrier(DynamoDBBatchWriter(_FailingDynamoClient(), table_name="cities")))
    records = (NormalizedRecord(id=1, fields={"nom_com": "Pau"}),)
    with pytest.raises(SinkChunkWriteError):
        sink.write_chunk(BatchChunk(index=0, offset=0, records=records))

from __future__ import annotations

from threading import RLock
from typing import Any, Dict, List

from pymongo.errors import BulkWriteError, PyMongoError

from ..errors import SinkChunkWriteError
from ..models.common import BatchChunk, JobContext
from .base import RecordSink


class MongoDocumentSink(RecordSink):
    """``insert_many`` of each chunk, keyed by the record id under ``primary_key``."""

    name = "documents"

    def __init__(self, collection, *, primary_key: str = "n_id", chunk_size: int = 1000, ordered: bool = True) -> None:
        self._collection = collection
        self._primary_key = primary_key
        self.chunk_size = chunk_size
        self._ordered = ordered

    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        documents = [record.as_document(self._primary_key) for record in chunk.records]
        try:
            self._collection.insert_many(documents, ordered=self._ordered)
        except BulkWriteError as exc:
            details = exc.details or {}
            inserted = int(details.get("nInserted", 0) or 0)
            raise SinkChunkWriteError(
                self.name,
                chunk.index,
                f"bulk write error ({len(details.get('writeErrors', []))} write errors)",
                failed_items=len(documents) - inserted,
            ) from exc
        except PyMongoError as exc:
            raise SinkChunkWriteError(self.name, chunk.index, str(exc)) from exc


class InMemoryDocumentSink(RecordSink):
    """Keeps inserted documents in memory, keyed by primary key."""

    name = "documents"

    def __init__(self, *, primary_key: str = "n_id", chunk_size: int = 1000) -> None:
        self._primary_key = primary_key
        self.chunk_size = chunk_size
        self._documents: Dict[Any, Dict[str, Any]] = {}
        self._lock = RLock()
        self.insert_calls = 0

    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        documents = [record.as_document(self._primary_key) for record in chunk.records]
        with self._lock:
            self.insert_calls += 1
            for document in documents:
                key = document[self._primary_key]
                if key in self._documents:
                    raise SinkChunkWriteError(self.name, chunk.index, f"duplicate key {key}")
                self._documents[key] = document

    def find(self, **criteria: Any) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                dict(document)
                for document in self._documents.values()
                if all(document.get(field) == value for field, value in criteria.items())
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


__all__ = ["InMemoryDocumentSink", "MongoDocumentSink"]

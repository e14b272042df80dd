from __future__ import annotations

import json
import urllib.error
import urllib.request
from threading import RLock
from typing import Any, Dict, List, Sequence

from ..errors import SinkChunkWriteError
from ..models.common import BatchChunk, JobContext, NormalizedRecord
from .base import RecordSink


def project_search_document(record: NormalizedRecord) -> Dict[str, Any]:
    """Fixed body projected into the search index for each city."""
    return {
        "insee_code": record.get("codgeo"),
        "nom_com": record.get("nom_com") or record.get("libgeo"),
        "nom_dept": record.get("nom_dept"),
        "nom_reg": record.get("nom_reg"),
        "geo_point": record.get("geo_point"),
        "geo_shape": record.get("geo_shape"),
    }


def build_bulk_actions(records: Sequence[NormalizedRecord], *, index: str, doc_type: str | None = None) -> List[Dict[str, Any]]:
    """Alternating action / document entries for the ``_bulk`` API."""
    actions: List[Dict[str, Any]] = []
    for record in records:
        action: Dict[str, Any] = {"_index": index, "_id": str(record.id)}
        if doc_type:
            action["_type"] = doc_type
        actions.append({"index": action})
        actions.append(project_search_document(record))
    return actions


def encode_ndjson(entries: Sequence[Dict[str, Any]]) -> bytes:
    return ("\n".join(json.dumps(entry, ensure_ascii=False, default=str) for entry in entries) + "\n").encode("utf-8")


class ElasticsearchBulkSink(RecordSink):
    """Bulk-indexes chunks through the Elasticsearch/OpenSearch ``_bulk`` endpoint."""

    name = "search"

    def __init__(
        self,
        *,
        base_url: str,
        index: str,
        doc_type: str | None = None,
        timeout: float = 30.0,
        chunk_size: int = 1000,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._index = index
        self._doc_type = doc_type
        self._timeout = timeout
        self.chunk_size = chunk_size
        self._opener = opener or urllib.request.build_opener()

    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        body = encode_ndjson(build_bulk_actions(chunk.records, index=self._index, doc_type=self._doc_type))
        request = urllib.request.Request(
            url=f"{self._base_url}/_bulk",
            data=body,
            headers={"Content-Type": "application/x-ndjson", "User-Agent": "cityindex-ingestion/1.0"},
            method="POST",
        )
        try:
            with self._opener.open(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8") or "{}"
        except urllib.error.HTTPError as exc:
            error_payload = exc.read().decode("utf-8", errors="replace") or exc.reason
            raise SinkChunkWriteError(self.name, chunk.index, f"bulk request failed ({exc.code}): {error_payload[:500]}") from exc
        except urllib.error.URLError as exc:
            raise SinkChunkWriteError(self.name, chunk.index, f"bulk request failed: {exc.reason}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SinkChunkWriteError(self.name, chunk.index, "bulk response is not valid JSON") from exc
        if payload.get("errors"):
            failed = [
                item
                for item in payload.get("items", [])
                if (item.get("index") or {}).get("error")
            ]
            first = (failed[0].get("index") or {}).get("error") if failed else None
            raise SinkChunkWriteError(
                self.name,
                chunk.index,
                f"{len(failed)} documents rejected; first error: {first}",
                failed_items=len(failed) or None,
            )


class InMemorySearchIndex(RecordSink):
    """Stores projected bodies by document id; records every bulk body it receives."""

    name = "search"

    def __init__(self, *, index: str = "cities", chunk_size: int = 1000) -> None:
        self._index = index
        self.chunk_size = chunk_size
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = RLock()
        self.bulk_calls: List[List[Dict[str, Any]]] = []

    def write_chunk(self, chunk: BatchChunk, *, context: JobContext | None = None) -> None:
        actions = build_bulk_actions(chunk.records, index=self._index)
        with self._lock:
            self.bulk_calls.append(actions)
            for action, document in zip(actions[::2], actions[1::2]):
                self._documents[action["index"]["_id"]] = document

    def get(self, document_id: int | str) -> Dict[str, Any] | None:
        with self._lock:
            return self._documents.get(str(document_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


__all__ = [
    "ElasticsearchBulkSink",
    "InMemorySearchIndex",
    "build_bulk_actions",
    "encode_ndjson",
    "project_search_document",
]

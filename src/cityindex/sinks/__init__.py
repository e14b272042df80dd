from .base import ChunkedBatchWriter, RecordSink, chunk_records
from .document_store import InMemoryDocumentSink, MongoDocumentSink
from .search_index import ElasticsearchBulkSink, InMemorySearchIndex
from .wide_column import DynamoDBBatchWriter, UnprocessedItemRetrier, WideColumnSink

__all__ = [
    "ChunkedBatchWriter",
    "DynamoDBBatchWriter",
    "ElasticsearchBulkSink",
    "InMemoryDocumentSink",
    "InMemorySearchIndex",
    "MongoDocumentSink",
    "RecordSink",
    "UnprocessedItemRetrier",
    "WideColumnSink",
    "chunk_records",
]

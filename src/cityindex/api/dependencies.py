from __future__ import annotations

import logging
import sqlite3
from functools import lru_cache
from typing import Any, List

import boto3
import redis
from pymongo import MongoClient

from ..config.settings import get_settings
from ..ids.base import IdAssigner
from ..ids.redis_counter import RedisCounterIdAssigner
from ..ids.snowflake import SnowflakeIdAssigner
from ..services.fanout import DualSinkFanout
from ..services.ingestion_jobs import IngestionJobCoordinator, IngestionTaskDispatcher
from ..sinks.base import RecordSink
from ..sinks.document_store import InMemoryDocumentSink, MongoDocumentSink
from ..sinks.search_index import ElasticsearchBulkSink, InMemorySearchIndex
from ..sinks.wide_column import DynamoDBBatchWriter, UnprocessedItemRetrier, WideColumnSink
from ..storage.job_log import IngestionJobLog
from ..storage.job_status import InMemoryJobStatusStore, JobStatusStore, RedisJobStatusStore
from ..telemetry.logger import AuditLogger, MetricsRecorder
from ..workers.dispatcher import RQIngestionTaskDispatcher, ThreadIngestionTaskDispatcher

LOGGER = logging.getLogger("cityindex.dependencies")


@lru_cache
def get_metrics() -> MetricsRecorder:
    settings = get_settings()
    telemetry = settings.telemetry
    return MetricsRecorder(
        namespace=telemetry.namespace,
        enable_prometheus=telemetry.enable_prometheus,
        exporter_port=telemetry.exporter_port if telemetry.enable_prometheus else None,
        exporter_address=telemetry.exporter_address,
    )


@lru_cache
def get_audit_logger() -> AuditLogger:
    return AuditLogger()


@lru_cache
def get_redis_client() -> redis.Redis:
    redis_settings = get_settings().storage.redis
    return redis.Redis.from_url(redis_settings.url, socket_timeout=redis_settings.socket_timeout)


@lru_cache
def get_id_assigner() -> IdAssigner:
    settings = get_settings()
    id_settings = settings.ids
    backend = id_settings.backend.lower()
    if backend == "redis":
        namespace = settings.storage.redis.namespace
        return RedisCounterIdAssigner(get_redis_client(), key=f"{namespace}:{id_settings.redis_key}")
    if backend != "snowflake":
        raise ValueError(f"Unsupported id backend: {id_settings.backend}")
    return SnowflakeIdAssigner(
        worker_id=id_settings.worker_id,
        epoch_ms=id_settings.epoch_ms,
        lock_timeout=id_settings.timeout_seconds,
        clock_tolerance_ms=id_settings.clock_tolerance_ms,
    )


@lru_cache
def get_job_status_store() -> JobStatusStore:
    settings = get_settings()
    status_settings = settings.jobs.status
    backend = status_settings.backend.lower()
    if backend == "redis" or settings.storage.redis.enabled:
        return RedisJobStatusStore(
            get_redis_client(),
            namespace=settings.storage.redis.namespace,
            ttl_seconds=status_settings.flag_ttl_seconds,
        )
    if settings.environment.lower() != "dev":
        LOGGER.warning(
            "job_status.in_memory",
            extra={"detail": "Active flags are process-local; configure redis for multi-process deployments."},
        )
    return InMemoryJobStatusStore()


@lru_cache
def get_job_log_connection() -> Any:
    dsn = get_settings().jobs.log.dsn
    if dsn.startswith("sqlite://"):
        path = dsn[len("sqlite://") :]
        database = path.lstrip("/") or ":memory:"
        return sqlite3.connect(database, check_same_thread=False)
    try:
        import psycopg  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            "Postgres DSN configured for the job log but 'psycopg' is not installed. Install the postgres extra.",
        ) from exc
    return psycopg.connect(dsn)


@lru_cache
def get_job_log() -> IngestionJobLog:
    return IngestionJobLog(connection=get_job_log_connection())


@lru_cache
def get_document_sink() -> RecordSink:
    mongo = get_settings().storage.mongo
    if not mongo.enabled:
        return InMemoryDocumentSink(primary_key=mongo.primary_key, chunk_size=mongo.chunk_size)
    client = MongoClient(mongo.uri)
    return MongoDocumentSink(
        client[mongo.database][mongo.collection],
        primary_key=mongo.primary_key,
        chunk_size=mongo.chunk_size,
        ordered=mongo.ordered_inserts,
    )


@lru_cache
def get_search_sink() -> RecordSink:
    es = get_settings().storage.elasticsearch
    if not es.enabled:
        return InMemorySearchIndex(index=es.index, chunk_size=es.chunk_size)
    return ElasticsearchBulkSink(
        base_url=es.url,
        index=es.index,
        doc_type=es.doc_type,
        timeout=es.timeout,
        chunk_size=es.chunk_size,
    )


@lru_cache
def get_wide_column_sink() -> WideColumnSink | None:
    dynamo = get_settings().storage.dynamodb
    if not dynamo.enabled:
        return None
    client = boto3.client("dynamodb", region_name=dynamo.region, endpoint_url=dynamo.endpoint_url)
    retrier = UnprocessedItemRetrier(
        DynamoDBBatchWriter(client, table_name=dynamo.table_name),
        batch_size=dynamo.batch_size,
        first_pass_delay=dynamo.first_pass_delay_seconds,
        retry_delay=dynamo.retry_delay_seconds,
        max_passes=dynamo.max_passes,
        max_elapsed_seconds=dynamo.max_elapsed_seconds,
        metrics=get_metrics(),
    )
    return WideColumnSink(retrier, chunk_size=dynamo.chunk_size)


@lru_cache
def get_fanout() -> DualSinkFanout:
    extra: List[RecordSink] = []
    wide_column = get_wide_column_sink()
    if wide_column is not None:
        extra.append(wide_column)
    return DualSinkFanout(
        document_sink=get_document_sink(),
        search_sink=get_search_sink(),
        extra_sinks=extra,
        metrics=get_metrics(),
    )


@lru_cache
def get_task_dispatcher() -> IngestionTaskDispatcher:
    settings = get_settings()
    worker = settings.jobs.worker
    if worker.enabled:
        return RQIngestionTaskDispatcher(
            redis_url=settings.storage.redis.url,
            queue_name=worker.queue_name,
            default_timeout=worker.default_timeout,
            max_queue_length=worker.max_queue_length,
        )
    return ThreadIngestionTaskDispatcher(
        max_active_jobs=worker.max_active_jobs,
        max_queue_length=worker.max_queue_length,
    )


def build_coordinator(task_dispatcher: IngestionTaskDispatcher | None) -> IngestionJobCoordinator:
    settings = get_settings()
    return IngestionJobCoordinator(
        id_assigner=get_id_assigner(),
        job_status=get_job_status_store(),
        job_log=get_job_log(),
        fanout=get_fanout(),
        metrics=get_metrics(),
        audit_logger=get_audit_logger(),
        task_dispatcher=task_dispatcher,
        id_block_size=settings.ids.block_size,
        id_max_workers=settings.ids.max_workers,
        id_timeout=settings.ids.timeout_seconds,
        deadline_seconds=settings.jobs.deadline_seconds,
        stale_after_seconds=settings.jobs.stale_after_seconds,
    )


@lru_cache
def get_ingestion_coordinator() -> IngestionJobCoordinator:
    dispatcher = get_task_dispatcher()
    coordinator = build_coordinator(dispatcher)
    if isinstance(dispatcher, ThreadIngestionTaskDispatcher):
        dispatcher.bind(coordinator.run_job)
    return coordinator


def reset_dependencies() -> None:
    """Drop every cached collaborator so the next lookup rebuilds from current settings."""
    for factory in (
        get_metrics,
        get_audit_logger,
        get_redis_client,
        get_id_assigner,
        get_job_status_store,
        get_job_log_connection,
        get_job_log,
        get_document_sink,
        get_search_sink,
        get_wide_column_sink,
        get_fanout,
        get_task_dispatcher,
        get_ingestion_coordinator,
    ):
        factory.cache_clear()


__all__ = [
    "build_coordinator",
    "get_audit_logger",
    "get_document_sink",
    "get_fanout",
    "get_id_assigner",
    "get_ingestion_coordinator",
    "get_job_log",
    "get_job_status_store",
    "get_metrics",
    "get_search_sink",
    "get_task_dispatcher",
    "get_wide_column_sink",
    "reset_dependencies",
]

from __future__ import annotations

import json
import os
from functools import lru_cache

from pydantic import BaseModel, Field


class MongoSettings(BaseModel):
    enabled: bool = Field(default=False, description="Write documents to MongoDB instead of the in-memory store")
    uri: str = "mongodb://localhost:27017"
    database: str = "cityindex"
    collection: str = "cities"
    primary_key: str = Field(default="n_id", description="Document field that receives the record id")
    ordered_inserts: bool = True
    chunk_size: int = 1000


class ElasticsearchSettings(BaseModel):
    enabled: bool = Field(default=False, description="Bulk-index into Elasticsearch instead of the in-memory index")
    url: str = "http://localhost:9200"
    index: str = "cities"
    doc_type: str | None = Field(default=None, description="Legacy mapping type (_type); leave unset on 7.x+")
    timeout: float = 30.0
    chunk_size: int = 1000


class DynamoDBSettings(BaseModel):
    enabled: bool = Field(default=False, description="Enable the wide-column sink")
    table_name: str = "cities"
    region: str | None = None
    endpoint_url: str | None = None
    chunk_size: int | None = Field(
        default=None,
        description="Records handed to the retrier per pipeline chunk; unset runs the whole job through one retrier run",
    )
    batch_size: int = Field(default=25, description="Items per BatchWriteItem call (DynamoDB limit: 25)")
    first_pass_delay_seconds: float = 1.0
    retry_delay_seconds: float = 2.0
    max_passes: int = 5
    max_elapsed_seconds: float = 120.0


class RedisSettings(BaseModel):
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    namespace: str = "cityindex"
    socket_timeout: float = 5.0


class StorageSettings(BaseModel):
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    elasticsearch: ElasticsearchSettings = Field(default_factory=ElasticsearchSettings)
    dynamodb: DynamoDBSettings = Field(default_factory=DynamoDBSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)


class IdSettings(BaseModel):
    backend: str = Field(default="snowflake", description="Id backend (snowflake or redis)")
    worker_id: int = Field(default=1, description="Snowflake worker id (0-1023)")
    epoch_ms: int = Field(default=1420070400000, description="Snowflake epoch (2015-01-01T00:00:00Z)")
    clock_tolerance_ms: int = 5
    timeout_seconds: float = 5.0
    block_size: int = Field(default=1000, description="Ids requested per block during batch acquisition")
    max_workers: int = Field(default=4, description="Concurrent block requests during batch acquisition")
    redis_key: str = "ids"


class JobStatusSettings(BaseModel):
    backend: str = Field(default="memory", description="Job status backend (memory or redis)")
    flag_ttl_seconds: int | None = Field(default=None, description="Expire active flags after this many seconds")


class JobLogSettings(BaseModel):
    dsn: str = Field(default="sqlite:///:memory:", description="DSN for the ingestion job log")


class JobWorkerSettings(BaseModel):
    enabled: bool = Field(default=False, description="Dispatch running jobs to an RQ queue")
    queue_name: str = "ingestion"
    default_timeout: int = 3600
    max_active_jobs: int = Field(default=2, description="Background threads for in-process dispatch")
    max_queue_length: int | None = 50


class JobSettings(BaseModel):
    status: JobStatusSettings = Field(default_factory=JobStatusSettings)
    log: JobLogSettings = Field(default_factory=JobLogSettings)
    worker: JobWorkerSettings = Field(default_factory=JobWorkerSettings)
    deadline_seconds: float | None = Field(default=1800.0, description="Cancel running jobs after this long")
    stale_after_seconds: float = Field(default=7200.0, description="Running jobs older than this are swept as failed")
    sweep_on_startup: bool = True


class TelemetrySettings(BaseModel):
    namespace: str = "cityindex"
    enable_prometheus: bool = False
    exporter_port: int | None = None
    exporter_address: str = "0.0.0.0"


class ApiSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    workers: int = 1
    max_upload_bytes: int = 64 * 1024 * 1024


class AppSettings(BaseModel):
    environment: str = "dev"
    storage: StorageSettings = Field(default_factory=StorageSettings)
    ids: IdSettings = Field(default_factory=IdSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


_INJECTED: AppSettings | None = None


def get_settings() -> AppSettings:
    """Return application settings (injected settings win over the environment)."""
    if _INJECTED is not None:
        return _INJECTED
    return _load_settings()


@lru_cache
def _load_settings() -> AppSettings:
    overrides = _load_env_overrides()
    if not overrides:
        return AppSettings()
    return AppSettings(**overrides)


def set_settings(settings: AppSettings) -> None:
    """Programmatically override application settings.

    Every subsequent ``get_settings()`` call returns ``settings`` until
    ``reset_settings()`` is called. Used by the Hydra entry points and tests.

    Example:
        >>> set_settings(AppSettings(environment="test"))
        >>> get_settings().environment
        'test'
    """
    global _INJECTED
    _INJECTED = settings


def reset_settings() -> None:
    """Drop injected settings and reload from environment variables."""
    global _INJECTED
    _INJECTED = None
    _load_settings.cache_clear()


def _load_env_overrides(prefix: str = "CITYINDEX_") -> dict:
    overrides: dict = {}
    for key, raw_value in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[len(prefix) :].strip("_")
        if not path:
            continue
        segments = [segment.lower() for segment in path.split("__") if segment]
        if not segments:
            continue
        cursor = overrides
        for segment in segments[:-1]:
            cursor = cursor.setdefault(segment, {})
        cursor[segments[-1]] = _coerce_env_value(raw_value)
    return overrides


def _coerce_env_value(value: str):
    if value == "":
        return None
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    if value.isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        pass
    if value.startswith("[") or value.startswith("{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


Settings = AppSettings

__all__ = [
    "AppSettings",
    "Settings",
    "get_settings",
    "reset_settings",
    "set_settings",
]

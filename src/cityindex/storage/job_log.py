from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional, Sequence

from ..models.common import IngestionJobRecord, JobState


class IngestionJobLog:
    """Durable job log backed by a DB-API connection (sqlite3 or psycopg).

    One row per job; the row outlives the ephemeral active flag and is what
    status polling and the stale-flag sweep read.
    """

    def __init__(self, *, connection: Any, logger: Optional[logging.Logger] = None) -> None:
        self._connection = connection
        self._logger = logger or logging.getLogger(__name__)
        self._lock = RLock()
        module_name = type(connection).__module__
        self._placeholder = "%s" if "psycopg" in module_name else "?"
        self._ensure_schema()

    # -- public API -----------------------------------------------------

    def create(self, job_id: str, *, record_count: int) -> IngestionJobRecord:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._execute(
                """
                INSERT INTO ingestion_jobs (job_id, state, record_count, created_at, updated_at, sinks, error)
                VALUES (?, ?, ?, ?, ?, ?, NULL)
                """,
                (job_id, JobState.CREATED.value, record_count, now.isoformat(), now.isoformat(), _serialize_json({})),
            )
            self._connection.commit()
        return IngestionJobRecord(
            job_id=job_id,
            state=JobState.CREATED,
            record_count=record_count,
            created_at=now,
            updated_at=now,
        )

    def mark_running(self, job_id: str) -> IngestionJobRecord:
        return self._update(job_id, JobState.RUNNING)

    def complete(self, job_id: str, sinks: Dict[str, Dict[str, object]]) -> IngestionJobRecord:
        failed = sum(int(report.get("failed_chunks", 0) or 0) for report in sinks.values())
        state = JobState.PARTIAL if failed else JobState.COMPLETED
        return self._update(job_id, state, sinks=sinks)

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        state: JobState = JobState.FAILED,
        sinks: Dict[str, Dict[str, object]] | None = None,
    ) -> IngestionJobRecord:
        return self._update(job_id, state, sinks=sinks, error=error)

    def get(self, job_id: str) -> IngestionJobRecord | None:
        with self._lock:
            row = self._execute(
                """
                SELECT job_id, state, record_count, created_at, updated_at, sinks, error
                FROM ingestion_jobs
                WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        return self._to_record(row) if row is not None else None

    def list(self, *, limit: int = 50, states: Sequence[JobState] | None = None) -> List[IngestionJobRecord]:
        sql = "SELECT job_id, state, record_count, created_at, updated_at, sinks, error FROM ingestion_jobs"
        parameters: List[object] = []
        if states:
            sql += " WHERE state IN (" + ", ".join("?" for _ in states) + ")"
            parameters.extend(state.value for state in states)
        sql += " ORDER BY created_at DESC LIMIT ?"
        parameters.append(limit)
        with self._lock:
            rows = self._execute(sql, parameters).fetchall()
        return [self._to_record(row) for row in rows]

    # -- internal helpers ----------------------------------------------

    def _update(
        self,
        job_id: str,
        state: JobState,
        *,
        sinks: Dict[str, Dict[str, object]] | None = None,
        error: str | None = None,
    ) -> IngestionJobRecord:
        now_iso = datetime.now(timezone.utc).isoformat()
        with self._lock:
            if sinks is None:
                cursor = self._execute(
                    "UPDATE ingestion_jobs SET state = ?, updated_at = ?, error = ? WHERE job_id = ?",
                    (state.value, now_iso, error, job_id),
                )
            else:
                cursor = self._execute(
                    "UPDATE ingestion_jobs SET state = ?, updated_at = ?, error = ?, sinks = ? WHERE job_id = ?",
                    (state.value, now_iso, error, _serialize_json(sinks), job_id),
                )
            self._connection.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"job {job_id} not found")
        self._logger.debug("job_log.updated", extra={"job_id": job_id, "state": state.value})
        record = self.get(job_id)
        if record is None:
            raise KeyError(f"job {job_id} not found")
        return record

    def _ensure_schema(self) -> None:
        with self._lock:
            self._execute(
                """
                CREATE TABLE IF NOT EXISTS ingestion_jobs (
                    job_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    record_count INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    sinks TEXT,
                    error TEXT
                )
                """,
            )
            self._connection.commit()

    def _execute(self, sql: str, parameters: Sequence[object] | None = None):
        cursor = self._connection.cursor()
        statement = self._prepare_sql(sql)
        if parameters is None:
            cursor.execute(statement)
        else:
            cursor.execute(statement, parameters)
        return cursor

    def _prepare_sql(self, sql: str) -> str:
        if self._placeholder == "?":
            return sql
        return sql.replace("?", self._placeholder)

    @staticmethod
    def _to_record(row: Sequence[Any]) -> IngestionJobRecord:
        job_id, state, record_count, created_at, updated_at, sinks, error = row
        return IngestionJobRecord(
            job_id=job_id,
            state=JobState(state),
            record_count=record_count or 0,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
            sinks=_deserialize_json(sinks),
            error=error,
        )


def _serialize_json(payload: object) -> str:
    return json.dumps(payload, default=str)


def _deserialize_json(raw: Any) -> Dict[str, Dict[str, object]]:
    if not raw:
        return {}
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}


__all__ = ["IngestionJobLog"]

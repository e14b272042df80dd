from __future__ import annotations

from typing import Dict, List

from ..api.dependencies import build_coordinator
from ..models.common import PreparedJob
from ..services.ingestion_jobs import IngestionJobCoordinator
from .dispatcher import deserialize_records


def run_ingestion_job(*, job_id: str, records: List[Dict[str, object]]) -> Dict[str, object]:
    """Worker entry point for the running phase of one ingestion job."""

    coordinator = _get_coordinator()
    job = PreparedJob(job_id=job_id, records=deserialize_records(records))
    record = coordinator.run_job(job)
    return {
        "job_id": record.job_id,
        "state": record.state.value,
        "record_count": record.record_count,
        "sinks": record.sinks,
        "error": record.error,
    }


_COORDINATOR: IngestionJobCoordinator | None = None


def _get_coordinator() -> IngestionJobCoordinator:
    # Worker processes run jobs inline; dispatching again would re-enqueue them.
    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = build_coordinator(None)
    return _COORDINATOR


__all__ = ["run_ingestion_job"]

from __future__ import annotations

import io
from datetime import datetime
from typing import Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..config.settings import get_settings
from ..errors import DispatchBackpressure, IdServiceUnavailable, MalformedRecordError
from ..models.common import IngestionJobRecord
from ..services.ingestion_jobs import IngestionJobCoordinator
from ..telemetry.logger import MetricsRecorder
from .dependencies import get_ingestion_coordinator, get_metrics

router = APIRouter()

_READ_CHUNK_BYTES = 1024 * 1024


class JobAcknowledgementModel(BaseModel):
    message: str
    job_id: str
    state: str
    record_count: int


class JobSummaryModel(BaseModel):
    job_id: str
    state: str
    record_count: int
    created_at: datetime
    updated_at: datetime
    error: str | None = None


class JobDetailModel(JobSummaryModel):
    active: bool = Field(default=False, description="Whether the job currently holds its active flag")
    sinks: Dict[str, Dict[str, object]] = Field(default_factory=dict)


class CancelResponseModel(BaseModel):
    job_id: str
    cancel_requested: bool


class TelemetryMetricsModel(BaseModel):
    jobs: Dict[str, int]
    records_ingested: int
    chunk_writes: Dict[str, Dict[str, int]]
    batch_retry_items: int
    job_latency_ms: Dict[str, float]
    exporter: Dict[str, object]


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {"status": "ok", "environment": settings.environment}


@router.post("/cities", response_model=JobAcknowledgementModel, status_code=status.HTTP_202_ACCEPTED)
async def upload_cities(
    file: UploadFile = File(...),
    coordinator: IngestionJobCoordinator = Depends(get_ingestion_coordinator),
):
    """Accept a JSON array of city records and start an ingestion job.

    The upload is buffered for this request only and parsed once; the
    response carries the job id to poll at ``/cities/jobs/{job_id}``.
    """
    limit = get_settings().api.max_upload_bytes
    buffer = io.BytesIO()
    while True:
        block = await file.read(_READ_CHUNK_BYTES)
        if not block:
            break
        buffer.write(block)
        if buffer.tell() > limit:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"upload exceeds {limit} bytes",
            )
    try:
        ack = await run_in_threadpool(coordinator.submit, buffer.getvalue())
    except MalformedRecordError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except IdServiceUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except DispatchBackpressure as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc))
    return JobAcknowledgementModel(
        message=ack.message,
        job_id=ack.job_id,
        state=ack.state.value,
        record_count=ack.record_count,
    )


@router.get("/cities/jobs", response_model=List[JobSummaryModel])
def list_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    coordinator: IngestionJobCoordinator = Depends(get_ingestion_coordinator),
):
    return [_summary(job) for job in coordinator.list_jobs(limit=limit)]


@router.get("/cities/jobs/{job_id}", response_model=JobDetailModel)
def get_job(
    job_id: str,
    coordinator: IngestionJobCoordinator = Depends(get_ingestion_coordinator),
):
    job = coordinator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return JobDetailModel(
        **_summary(job).model_dump(),
        active=coordinator.is_active(job_id),
        sinks=job.sinks,
    )


@router.delete("/cities/jobs/{job_id}", response_model=CancelResponseModel, status_code=status.HTTP_202_ACCEPTED)
def cancel_job(
    job_id: str,
    coordinator: IngestionJobCoordinator = Depends(get_ingestion_coordinator),
):
    job = coordinator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    if job.state.terminal:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"job already {job.state.value}")
    return CancelResponseModel(job_id=job_id, cancel_requested=coordinator.cancel(job_id))


@router.get("/telemetry/metrics", response_model=TelemetryMetricsModel)
def telemetry_metrics(metrics: MetricsRecorder = Depends(get_metrics)):
    return TelemetryMetricsModel(**metrics.snapshot())


def _summary(job: IngestionJobRecord) -> JobSummaryModel:
    return JobSummaryModel(
        job_id=job.job_id,
        state=job.state.value,
        record_count=job.record_count,
        created_at=job.created_at,
        updated_at=job.updated_at,
        error=job.error,
    )


__all__ = ["router"]

"""Health-check and Prometheus exposition endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from api.dependencies import get_metrics_recorder
from api.models.schemas import HealthResponse
from telemetry.metrics import MetricsRecorder

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


@router.get("/metrics")
async def metrics(recorder: MetricsRecorder = Depends(get_metrics_recorder)):
    return Response(content=recorder.exposition(), media_type=CONTENT_TYPE_LATEST)

"""
Health Check Routes
===================
Provides ``/health``, ``/health/ready``, and ``/health/live`` endpoints
for container orchestrators (Docker, K8s) and monitoring.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from leafcare_server.dependencies import get_context
from leafcare_server.engine.service import ServiceContext
from leafcare_server.schemas import HealthResponse, LiveResponse, ReadyResponse


router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Basic health probe; always returns ``{"status": "healthy"}``."""
    return HealthResponse(status="healthy")


@router.get("/ready", response_model=ReadyResponse)
async def readiness(context: ServiceContext = Depends(get_context)) -> ReadyResponse:
    """
    Readiness probe.

    Returns ``ready: true`` only when the model and labels have been loaded
    successfully.  A failed load is terminal for the process, so
    orchestrators should replace an instance reporting ``state: failed``.
    """
    return ReadyResponse(
        ready=context.is_ready(),
        state=context.state.value,
        failure_reason=context.failure_reason,
        num_classes=len(context.labels) if context.labels is not None else 0,
        unknown_labels=context.diagnostics.unknown_labels,
        missing_remedies=context.diagnostics.missing_remedies,
    )


@router.get("/live", response_model=LiveResponse)
async def liveness() -> LiveResponse:
    """Liveness probe: confirms the process is running."""
    return LiveResponse(live=True)

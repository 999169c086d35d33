"""Health endpoints aggregating per-component status."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from taskrelay.core.models import HealthState, utcnow
from taskrelay.orchestration.orchestrator import Orchestrator
from taskrelay.runtime import get_orchestrator

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    overall = orchestrator.overall_health()
    body = {
        "status": overall.value,
        "timestamp": utcnow().isoformat(),
        "modules": [item.to_dict() for item in orchestrator.all_health_statuses()],
    }
    code = status.HTTP_503_SERVICE_UNAVAILABLE if overall is HealthState.UNHEALTHY else status.HTTP_200_OK
    return JSONResponse(body, status_code=code)


@router.get("/{module}")
async def module_health(module: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    for item in orchestrator.all_health_statuses():
        if item.module.lower() == module.lower():
            code = status.HTTP_200_OK if item.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
            return JSONResponse(item.to_dict(), status_code=code)
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown module: {module}")

"""
Health check endpoints

- Basic liveness check
- Detailed health status from the registered checks
- Observability dashboard
"""
from fastapi import APIRouter, Depends, Response, status
from fastapi.encoders import jsonable_encoder

from afms.api.deps import get_container, verify_token
from afms.container import Container
from afms.models.enums import HealthStatus

router = APIRouter()


@router.get("/health")
async def health_check(container: Container = Depends(get_container)):
    """Liveness probe. Returns 200 while the process is serving."""
    return {"status": HealthStatus.HEALTHY.value, "service": container.settings.APP_NAME}


@router.get("/health/detailed")
async def detailed_health_check(response: Response, container: Container = Depends(get_container)):
    """Run every registered check; 503 when the overall status is unhealthy."""
    health_check = container.observability.health_check
    await health_check.run_all_checks()
    overall = health_check.get_overall_health()

    if overall["status"] == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": overall["status"].value,
        "version": container.settings.APP_VERSION,
        "checks": {c.name: jsonable_encoder(c.to_dict()) for c in overall["checks"]},
    }


@router.get("/metrics/dashboard", dependencies=[Depends(verify_token)])
async def metrics_dashboard(container: Container = Depends(get_container)):
    return jsonable_encoder(container.observability.get_dashboard_data())

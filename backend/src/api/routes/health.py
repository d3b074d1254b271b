from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.platform.health import HealthChecker

router = APIRouter()


@router.get("/health")
def health(request: Request):
    """Database and configuration check. 503 when degraded."""
    checker = HealthChecker(request.app.state.engine, request.app.state.settings)
    result = checker.get_health_status()
    status_code = 200 if result["status"] == "ok" else 503
    return JSONResponse(status_code=status_code, content=result)

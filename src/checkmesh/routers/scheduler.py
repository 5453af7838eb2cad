from fastapi import APIRouter, Depends, Header, HTTPException, status

from checkmesh.errors import AuthError
from checkmesh.services import Services, get_services

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


def require_secret(
    x_api_secret: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Services:
    try:
        services.gateway.authenticate(x_api_secret)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return services


@router.post("/trigger")
async def trigger_tick(services: Services = Depends(require_secret)):
    report = await services.scheduler.trigger()
    return report.model_dump(mode="json", by_alias=True)


@router.get("/stats")
async def scheduler_stats(services: Services = Depends(require_secret)):
    stats = await services.scheduler.get_stats()
    return stats.model_dump(mode="json", by_alias=True)

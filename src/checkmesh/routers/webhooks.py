from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from checkmesh.errors import AuthError, MalformedPayloadError
from checkmesh.services import Services, get_services

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/monitor-results")
async def receive_monitor_results(
    request: Request,
    x_api_secret: str | None = Header(default=None),
    services: Services = Depends(get_services),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        summary = await services.gateway.ingest(payload, header_secret=x_api_secret)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except MalformedPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, **summary.model_dump(by_alias=True)}


@router.get("/health")
async def webhook_health(services: Services = Depends(get_services)):
    health = await services.gateway.health()
    if health["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health)
    return health

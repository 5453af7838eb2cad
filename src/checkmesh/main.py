import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkmesh.config import get_settings
from checkmesh.database import get_engine, get_session_factory, init_models
from checkmesh.routers import scheduler, webhooks
from checkmesh.services import build_services

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    # Create tables on startup
    await init_models(engine)

    services = build_services(settings, get_session_factory())
    app.state.services = services

    # Start the scheduler and embedded workers (skip in test mode)
    testing = getattr(app.state, "_testing", False)
    if not testing:
        services.start()

    yield

    # Shutdown
    if not testing:
        await services.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(webhooks.router)
app.include_router(scheduler.router)


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
    }

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_oauth import router as oauth_router
from .routes_sync import router as sync_router
from .settings import get_settings

logger = logging.getLogger("socialsync")

settings = get_settings()
app = FastAPI(title="socialsync", description="Social analytics sync backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


for router in (sync_router, oauth_router):
    app.include_router(router)


@app.on_event("startup")
async def start_scheduler():
    """Periodic global sync and token sweep run inside the API process unless disabled."""
    from .services.scheduler import scheduler_service

    scheduler_service.configure(settings.async_database_url)
    scheduler_service.start()
    if settings.demo_mode:
        logger.warning("DEMO_MODE is on: connectors return generated data, no vendor calls are made")


@app.on_event("shutdown")
async def stop_scheduler():
    from .services.scheduler import scheduler_service

    scheduler_service.stop()

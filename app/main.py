import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.chatwoot import router as chatwoot_router
from app.container import configure_container
from app.db import SessionLocal
from app.logging import configure_logging
from app.services.chatwoot.sync import reconcile_stale

logger = logging.getLogger(__name__)

app = FastAPI(title="wa_chatwoot API")

configure_logging()
configure_container(SessionLocal)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(chatwoot_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _reconcile_sync_jobs():
    db = SessionLocal()
    try:
        stale = reconcile_stale(db)
        if stale:
            logger.info("chatwoot_sync_jobs_reconciled count=%s", stale)
    finally:
        db.close()

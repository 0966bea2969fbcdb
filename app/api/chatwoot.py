from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_client_factory, get_db, get_resolver_locks, get_session_gateway
from app.models.chatwoot import ChatwootConfig
from app.schemas.chatwoot import (
    ChatwootConfigRead,
    ChatwootConfigUpdate,
    CredentialsValidateRequest,
    CredentialsValidateResponse,
    OverviewRead,
    ResetResponse,
    ResolveAllResponse,
    SyncFailureRead,
    SyncJobRead,
    SyncStartRequest,
)
from app.services.chatwoot import config as config_service
from app.services.chatwoot.client import ChatwootClient
from app.services.chatwoot.errors import ChatwootSyncError
from app.services.chatwoot.overview import get_overview
from app.services.chatwoot.sync import (
    BulkSyncOrchestrator,
    idle_status,
    job_read,
    latest_job,
    request_cancel,
    reset_integration,
    running_job,
)
from app.services.sync_failures import list_failures

router = APIRouter(prefix="/chatwoot", tags=["chatwoot"])


def _orchestrator(db: Session, config: ChatwootConfig, client: ChatwootClient, locks, gateway) -> BulkSyncOrchestrator:
    return BulkSyncOrchestrator(db, client, config, locks, gateway)


# ==================== Config ====================


@router.get("/sessions/{session_id}/config", response_model=ChatwootConfigRead)
def get_config(session_id: str, db: Session = Depends(get_db)):
    try:
        config = config_service.require_config(db, session_id, enabled=False)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return ChatwootConfigRead.model_validate(config)


@router.put("/sessions/{session_id}/config", response_model=ChatwootConfigRead)
def put_config(
    session_id: str,
    payload: ChatwootConfigUpdate,
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    try:
        config = config_service.set_config(db, session_id, payload, client_factory=client_factory)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return ChatwootConfigRead.model_validate(config)


@router.delete("/sessions/{session_id}/config", status_code=status.HTTP_204_NO_CONTENT)
def delete_config(session_id: str, db: Session = Depends(get_db)):
    config = config_service.get_config(db, session_id)
    if config:
        running = running_job(db, session_id)
        if running:
            raise HTTPException(status_code=409, detail=f"Sync job {running.id} is running")
    if not config_service.delete_config(db, session_id):
        raise HTTPException(status_code=404, detail="Chatwoot config not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/validate", response_model=CredentialsValidateResponse)
def validate_credentials(payload: CredentialsValidateRequest):
    try:
        result = config_service.validate_credentials(payload.base_url, payload.api_token, payload.account_id)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return CredentialsValidateResponse(**result)


# ==================== Bulk sync ====================


@router.post("/sessions/{session_id}/sync", response_model=SyncJobRead, status_code=status.HTTP_202_ACCEPTED)
def start_sync(
    session_id: str,
    payload: SyncStartRequest,
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
    locks=Depends(get_resolver_locks),
    gateway=Depends(get_session_gateway),
):
    try:
        config = config_service.require_config(db, session_id)
        with client_factory(config) as client:
            job = _orchestrator(db, config, client, locks, gateway).start(
                session_id, payload.type, window_days=payload.window_days
            )
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return job_read(job)


@router.get("/sessions/{session_id}/sync", response_model=SyncJobRead)
def sync_status(session_id: str, db: Session = Depends(get_db)):
    job = latest_job(db, session_id)
    return job_read(job) if job else idle_status(session_id)


@router.post("/sessions/{session_id}/sync/cancel", response_model=SyncJobRead)
def cancel_sync(session_id: str, db: Session = Depends(get_db)):
    job = request_cancel(db, session_id)
    if not job:
        raise HTTPException(status_code=404, detail="No sync job is running")
    return job_read(job)


# ==================== Maintenance ====================


@router.get("/sessions/{session_id}/overview", response_model=OverviewRead)
def overview(
    session_id: str,
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    try:
        config = config_service.require_config(db, session_id)
        with client_factory(config) as client:
            return get_overview(db, client, session_id, inbox_id=config.inbox_id)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc


@router.post("/sessions/{session_id}/resolve-all", response_model=ResolveAllResponse)
def resolve_all(
    session_id: str,
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
    locks=Depends(get_resolver_locks),
    gateway=Depends(get_session_gateway),
):
    try:
        config = config_service.require_config(db, session_id)
        with client_factory(config) as client:
            count = _orchestrator(db, config, client, locks, gateway).resolve_all_conversations(session_id)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return ResolveAllResponse(resolved_count=count)


@router.post("/sessions/{session_id}/reset", response_model=ResetResponse)
def reset(session_id: str, db: Session = Depends(get_db)):
    try:
        config_service.require_config(db, session_id, enabled=False)
        counts = reset_integration(db, session_id)
    except ChatwootSyncError as exc:
        raise exc.to_http_exception() from exc
    return ResetResponse(**counts)


@router.get("/sessions/{session_id}/failures", response_model=list[SyncFailureRead])
def failures(session_id: str, db: Session = Depends(get_db), limit: int = 50, offset: int = 0):
    return [SyncFailureRead.model_validate(row) for row in list_failures(db, session_id, limit=limit, offset=offset)]


# ==================== Ingress ====================


@router.post("/webhook/{session_id}", status_code=status.HTTP_202_ACCEPTED)
def chatwoot_webhook(session_id: str, payload: dict[str, Any] = Body(...)):
    from app.tasks.chatwoot import process_chatwoot_webhook

    process_chatwoot_webhook.delay(session_id, payload)
    return {"status": "queued"}


@router.post("/events/{session_id}", status_code=status.HTTP_202_ACCEPTED)
def whatsapp_events(session_id: str, payload: dict[str, Any] | list[dict[str, Any]] = Body(...)):
    from app.tasks.chatwoot import process_whatsapp_event

    events = payload if isinstance(payload, list) else [payload]
    for event in events:
        process_whatsapp_event.delay(session_id, event)
    return {"status": "queued", "count": len(events)}

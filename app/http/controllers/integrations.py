"""
Operator endpoints for the ShipStation integration: credentials, on/off
switch, job queue inspection and replay, inventory sync and the integration log.
Every route is scoped to the store in the operator's token.
Never returns stored secrets except once, at generation time.
"""
import logging
import time
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.auth import Operator, get_current_operator
from app.database import get_db
from app.dependencies import get_credential_store, get_inventory_client_factory, get_job_queue
from app.http.requests.schemas import (
    CredentialGenerateRequest,
    CredentialListResponse,
    CredentialSummary,
    GeneratedCredentialResponse,
    IntegrationStatusRequest,
    IntegrationStatusResponse,
    InventorySyncResponse,
    JobReplayResponse,
    RemoteApiKeyRequest,
)
from app.models import (
    CredentialScheme,
    IntegrationCredential,
    IntegrationLog,
    IntegrationLogStatus,
    IntegrationOperation,
    InventorySyncRecord,
    Job,
    JobStatus,
    JobType,
    Store,
)
from app.services.credentials import CredentialStore
from app.services.integration_log import record_integration_event
from app.services.job_queue import JobQueue, serialize_job
from app.services.shipstation_inventory_sync import InventoryFeedClient, InventoryReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_store(db: Session, operator: Operator) -> Store:
    store = db.query(Store).filter(Store.id == operator.store_id).first()
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


def _summarize(credential: IntegrationCredential, credentials: CredentialStore) -> CredentialSummary:
    hint = None
    if credential.is_active:
        identifier, _ = credentials.reveal(credential)
        hint = f"{identifier[:4]}…{identifier[-2:]}" if len(identifier) > 8 else "…"
    return CredentialSummary(
        id=credential.id,
        scheme=credential.scheme,
        isActive=credential.is_active,
        identifierHint=hint,
        createdAt=credential.created_at.isoformat() if credential.created_at else None,
        rotatedAt=credential.rotated_at.isoformat() if credential.rotated_at else None,
        disabledAt=credential.disabled_at.isoformat() if credential.disabled_at else None,
    )


def _audit_rotation(db: Session, store_id: str, scheme: CredentialScheme, action: str, started: float):
    record_integration_event(
        db,
        store_id=store_id,
        operation=IntegrationOperation.CREDENTIAL_ROTATION,
        status=IntegrationLogStatus.SUCCESS,
        request_data={"scheme": scheme.value, "action": action},
        execution_time_ms=int((time.monotonic() - started) * 1000),
    )


# Credentials

@router.get("/credentials", response_model=CredentialListResponse)
async def list_credentials(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """List active and retired credentials (identifiers masked)."""
    store = _get_store(db, operator)
    return CredentialListResponse(
        credentials=[_summarize(c, credentials) for c in credentials.list_for_store(store.id)]
    )


@router.post("/credentials/generate", response_model=GeneratedCredentialResponse, status_code=status.HTTP_201_CREATED)
async def generate_credentials(
    body: CredentialGenerateRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """Generate credentials to paste into ShipStation. Replaces any active pair of the same scheme."""
    started = time.monotonic()
    store = _get_store(db, operator)
    generated = credentials.generate(store.id, body.scheme)
    _audit_rotation(db, store.id, body.scheme, "generate", started)
    return GeneratedCredentialResponse(
        credentialId=generated.credential_id,
        storeId=generated.store_id,
        scheme=generated.scheme,
        identifier=generated.identifier,
        secret=generated.secret,
    )


@router.post("/credentials/{scheme}/rotate", response_model=GeneratedCredentialResponse)
async def rotate_credentials(
    scheme: CredentialScheme,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """Issue a fresh credential; the previous one stops working immediately."""
    started = time.monotonic()
    store = _get_store(db, operator)
    if credentials.get_active(store.id, scheme) is None:
        raise HTTPException(status_code=404, detail=f"No active {scheme.value} credential to rotate")
    generated = credentials.generate(store.id, scheme)
    _audit_rotation(db, store.id, scheme, "rotate", started)
    return GeneratedCredentialResponse(
        credentialId=generated.credential_id,
        storeId=generated.store_id,
        scheme=generated.scheme,
        identifier=generated.identifier,
        secret=generated.secret,
    )


@router.delete("/credentials/{scheme}")
async def disable_credentials(
    scheme: CredentialScheme,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    started = time.monotonic()
    store = _get_store(db, operator)
    if not credentials.disable(store.id, scheme):
        raise HTTPException(status_code=404, detail=f"No active {scheme.value} credential")
    _audit_rotation(db, store.id, scheme, "disable", started)
    return {"success": True, "scheme": scheme.value}


@router.put("/remote-api-key")
async def set_remote_api_key(
    body: RemoteApiKeyRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """Store the ShipStation V2 API key used for the inventory feed."""
    started = time.monotonic()
    store = _get_store(db, operator)
    credential = credentials.issue(store.id, CredentialScheme.REMOTE_API_KEY, body.apiKey)
    _audit_rotation(db, store.id, CredentialScheme.REMOTE_API_KEY, "set", started)
    return {"success": True, "credentialId": credential.id}


# Integration switch

@router.get("/status", response_model=IntegrationStatusResponse)
async def get_integration_status(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    store = _get_store(db, operator)
    schemes = [c.scheme for c in credentials.list_for_store(store.id) if c.is_active]
    return IntegrationStatusResponse(
        storeId=store.id,
        integrationEnabled=store.integration_enabled,
        isActive=store.is_active,
        schemes=schemes,
    )


@router.put("/status", response_model=IntegrationStatusResponse)
async def set_integration_status(
    body: IntegrationStatusRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    credentials: CredentialStore = Depends(get_credential_store),
):
    """Enable or disable the ShipStation integration for the store."""
    store = _get_store(db, operator)
    store.integration_enabled = body.enabled
    db.commit()
    logger.info("ShipStation integration %s for store %s", "enabled" if body.enabled else "disabled", store.id)
    return await get_integration_status(db=db, operator=operator, credentials=credentials)


# Jobs

@router.get("/jobs")
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[JobType] = Query(None),
    limit: int = Query(50, le=500),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    job_queue: JobQueue = Depends(get_job_queue),
):
    jobs = job_queue.list_jobs(db, store_id=operator.store_id, status=status_filter, job_type=job_type, limit=limit)
    return {"jobs": [serialize_job(j) for j in jobs]}


@router.get("/jobs/stats")
async def job_stats(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    job_queue: JobQueue = Depends(get_job_queue),
):
    return job_queue.stats(db, store_id=operator.store_id)


@router.post("/jobs/{job_id}/replay", response_model=JobReplayResponse)
async def replay_job(
    job_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    job_queue: JobQueue = Depends(get_job_queue),
):
    """Re-run a failed or dead-lettered job as a new job."""
    job = db.query(Job).filter(Job.id == job_id, Job.store_id == operator.store_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    new_id = job_queue.replay(job.id)
    return JobReplayResponse(originalJobId=job.id, jobId=new_id)


# Inventory

@router.post("/inventory/sync", response_model=InventorySyncResponse)
async def sync_inventory_now(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    client_factory: Callable[[Session, str], InventoryFeedClient] = Depends(get_inventory_client_factory),
):
    """Run an inventory sync for the store immediately."""
    store = _get_store(db, operator)
    if not store.integration_enabled:
        raise HTTPException(status_code=403, detail="ShipStation integration is disabled for this store")
    client = client_factory(db, store.id)
    result = await InventoryReconciler(db, client).sync_inventory(store.id)
    return InventorySyncResponse(**result.to_dict())


@router.get("/inventory")
async def list_inventory(
    sku: Optional[str] = Query(None),
    limit: int = Query(100, le=1000),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    query = db.query(InventorySyncRecord).filter(InventorySyncRecord.store_id == operator.store_id)
    if sku:
        query = query.filter(InventorySyncRecord.sku == sku)
    rows = query.order_by(InventorySyncRecord.sku.asc()).limit(limit).all()
    return {
        "inventory": [
            {
                "sku": r.sku,
                "available": r.available,
                "onHand": r.on_hand,
                "allocated": r.allocated,
                "warehouseId": r.warehouse_id,
                "warehouseName": r.warehouse_name,
                "lastSyncedAt": r.last_synced_at.isoformat() if r.last_synced_at else None,
            }
            for r in rows
        ]
    }


# Integration log

@router.get("/logs")
async def list_integration_logs(
    operation: Optional[IntegrationOperation] = Query(None),
    status_filter: Optional[IntegrationLogStatus] = Query(None, alias="status"),
    limit: int = Query(100, le=500),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """List integration log entries for the store, newest first."""
    query = db.query(IntegrationLog).filter(IntegrationLog.store_id == operator.store_id)
    if operation:
        query = query.filter(IntegrationLog.operation == operation)
    if status_filter:
        query = query.filter(IntegrationLog.status == status_filter)
    logs = query.order_by(IntegrationLog.created_at.desc()).limit(limit).all()
    return {
        "logs": [
            {
                "id": log.id,
                "operation": log.operation.value,
                "status": log.status.value,
                "requestData": log.request_data,
                "responseData": log.response_data,
                "errorMessage": log.error_message,
                "executionTimeMs": log.execution_time_ms,
                "createdAt": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ]
    }

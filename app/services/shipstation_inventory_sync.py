"""
ShipStation inventory reconciliation.

Pages through the ShipStation V2 inventory feed and upserts each record into
inventory_sync_records keyed by (store_id, sku). Each page is committed on its
own, so an aborted run keeps what it already merged.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ErrorKind, IntegrationError, TransientInfrastructureFailure, Unauthenticated, ValidationFailure
from app.models import (
    CredentialScheme,
    IntegrationLogStatus,
    IntegrationOperation,
    InventorySyncRecord,
    utcnow,
)
from app.services.credentials import CredentialStore, SecretCipher
from app.services.http_client import get_with_retry
from app.services.integration_log import record_integration_event

logger = logging.getLogger(__name__)

MAX_PAGES = 1000


class InventoryFeedClient:
    """Thin client for GET /v2/inventory."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.SHIPSTATION_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.INVENTORY_FEED_TIMEOUT
        self.max_retries = max_retries
        self.transport = transport

    async def fetch_page(self, page: int, page_size: int) -> list[dict[str, Any]]:
        url = f"{self.base_url}/v2/inventory"
        try:
            resp = await get_with_retry(
                url,
                params={"page": page, "page_size": page_size},
                headers={"api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
                max_retries=self.max_retries,
                transport=self.transport,
            )
        except httpx.HTTPError as e:
            raise TransientInfrastructureFailure(f"Inventory feed request failed on page {page}: {e}")

        if resp.status_code in (401, 403):
            raise Unauthenticated(f"ShipStation rejected the API key ({resp.status_code})")
        if resp.status_code >= 400:
            message = None
            try:
                message = (resp.json() or {}).get("message")
            except ValueError:
                pass
            raise TransientInfrastructureFailure(
                message or f"Failed to fetch inventory: {resp.status_code} {resp.reason_phrase}"
            )
        try:
            data = resp.json()
        except ValueError:
            raise TransientInfrastructureFailure(f"Inventory feed returned non-JSON on page {page}")
        records = (data or {}).get("inventory") or []
        if not isinstance(records, list):
            raise TransientInfrastructureFailure(f"Inventory feed page {page} has no inventory list")
        return records


@dataclass
class InventorySyncResult:
    store_id: str
    synced: int = 0
    errors: list[str] = field(default_factory=list)
    pages_fetched: int = 0
    complete: bool = False
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "synced": self.synced,
            "errors": self.errors,
            "pagesFetched": self.pages_fetched,
            "complete": self.complete,
        }


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


class InventoryReconciler:
    def __init__(self, db: Session, client: InventoryFeedClient, page_size: Optional[int] = None):
        self.db = db
        self.client = client
        self.page_size = page_size or settings.INVENTORY_PAGE_SIZE

    def _upsert(self, store_id: str, record: dict, now) -> None:
        sku = str(record["sku"]).strip()
        available = _as_int(record.get("available"))
        on_hand = _as_int(record.get("on_hand"))
        allocated = _as_int(record.get("allocated"))
        row = (
            self.db.query(InventorySyncRecord)
            .filter(InventorySyncRecord.store_id == store_id, InventorySyncRecord.sku == sku)
            .first()
        )
        if row is None:
            row = InventorySyncRecord(store_id=store_id, sku=sku, last_synced_at=now)
            self.db.add(row)
            self.db.flush()
        row.available = available
        row.on_hand = on_hand
        row.allocated = allocated
        row.warehouse_id = record.get("warehouse_id") or row.warehouse_id
        row.warehouse_name = record.get("warehouse_name") or row.warehouse_name
        row.last_synced_at = now

    async def sync_inventory(self, store_id: str) -> InventorySyncResult:
        """
        Merge the full remote feed into local records.

        Stops at the first page shorter than page_size. A feed failure ends the
        run with complete=False; pages already merged stay committed.
        """
        started = time.monotonic()
        result = InventorySyncResult(store_id=store_id)
        page = 1
        while page <= MAX_PAGES:
            try:
                records = await self.client.fetch_page(page, self.page_size)
            except IntegrationError as e:
                logger.error("Inventory sync for store %s aborted on page %s: %s", store_id, page, e.message)
                result.errors.append(e.message)
                result.error_kind = e.kind
                break
            result.pages_fetched += 1

            now = utcnow()
            for record in records:
                if not isinstance(record, dict) or not record.get("sku"):
                    result.errors.append(f"Page {page}: record without SKU skipped")
                    continue
                try:
                    self._upsert(store_id, record, now)
                    result.synced += 1
                except (TypeError, ValueError) as e:
                    result.errors.append(f"SKU {record.get('sku')}: {e}")
            try:
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.exception("Inventory sync for store %s failed to commit page %s", store_id, page)
                result.errors.append(f"Database error on page {page}: {e}")
                result.error_kind = ErrorKind.TRANSIENT
                break

            if len(records) < self.page_size:
                result.complete = True
                break
            page += 1

        logger.info(
            "Inventory sync for store %s: synced=%s pages=%s complete=%s errors=%s",
            store_id, result.synced, result.pages_fetched, result.complete, len(result.errors),
        )
        record_integration_event(
            self.db,
            store_id=store_id,
            operation=IntegrationOperation.INVENTORY_SYNC,
            status=IntegrationLogStatus.SUCCESS if result.complete and not result.errors
            else IntegrationLogStatus.WARNING if result.complete else IntegrationLogStatus.FAILURE,
            response_data=result.to_dict(),
            error_message="; ".join(result.errors[:10]) or None,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        return result


def build_inventory_client(
    db: Session,
    store_id: str,
    cipher: SecretCipher,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> InventoryFeedClient:
    """Feed client authenticated with the store's remote API key."""
    credential = CredentialStore(db, cipher).get_active(store_id, CredentialScheme.REMOTE_API_KEY)
    if credential is None:
        raise ValidationFailure(f"No ShipStation API key configured for store {store_id}")
    api_key = cipher.decrypt(credential.identifier_encrypted)
    return InventoryFeedClient(api_key, transport=transport)

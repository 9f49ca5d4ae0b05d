"""
Integration audit log: append-only record of every authentication attempt,
export, notification, webhook, job outcome and inventory sync. Rows older
than the retention window are purged by a periodic task.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.models import IntegrationLog, IntegrationLogStatus, IntegrationOperation, utcnow

logger = logging.getLogger(__name__)

_REDACTED = "[REDACTED]"
_SECRET_MARKERS = ("password", "secret", "api_key", "apikey", "api-key", "authorization", "token", "signature")


def redact(data: Any) -> Any:
    """Replace values of secret-looking keys, recursively."""
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if any(marker in lowered for marker in _SECRET_MARKERS):
                out[key] = _REDACTED
            else:
                out[key] = redact(value)
        return out
    if isinstance(data, (list, tuple)):
        return [redact(v) for v in data]
    return data


def record_integration_event(
    db: Session,
    *,
    store_id: Optional[str],
    operation: IntegrationOperation,
    status: IntegrationLogStatus,
    request_data: Optional[dict] = None,
    response_data: Optional[dict] = None,
    error_message: Optional[str] = None,
    execution_time_ms: int = 0,
) -> Optional[IntegrationLog]:
    """
    Append an audit row and commit it.

    A failed audit write is logged and swallowed so it never breaks the
    operation being audited. The session is rolled back in that case, so
    callers must commit their own work before auditing.
    """
    try:
        entry = IntegrationLog(
            store_id=store_id,
            integration_type="shipstation",
            operation=operation,
            status=status,
            request_data=redact(request_data) if request_data else None,
            response_data=redact(response_data) if response_data else None,
            error_message=(error_message or None) and error_message[:2000],
            execution_time_ms=max(int(execution_time_ms), 0),
        )
        db.add(entry)
        db.commit()
        return entry
    except Exception as e:
        logger.warning("Failed to write integration log (%s/%s): %s", operation, status, e)
        db.rollback()
        return None


def purge_integration_logs(session_factory: sessionmaker, older_than_days: Optional[int] = None,
                           now: Optional[datetime] = None) -> int:
    """Delete audit rows created more than older_than_days ago."""
    days = older_than_days if older_than_days is not None else settings.INTEGRATION_LOG_RETENTION_DAYS
    cutoff = (now or utcnow()) - timedelta(days=days)
    with session_factory() as db:
        result = db.execute(
            delete(IntegrationLog)
            .where(IntegrationLog.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    if result.rowcount:
        logger.info("Purged %s integration log row(s) older than %s day(s)", result.rowcount, days)
    return result.rowcount

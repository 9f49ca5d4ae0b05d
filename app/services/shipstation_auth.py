"""
ShipStation inbound authentication.

ShipStation's Custom Store calls arrive with either an API key pair
(X-API-Key + X-API-Secret) or HTTP Basic credentials. Both schemes can be
active for a store at the same time; either one is enough.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from app.errors import IntegrationDisabled, Unauthenticated
from app.models import CredentialScheme, IntegrationCredential, IntegrationLogStatus, IntegrationOperation, Store
from app.services.credentials import CredentialStore
from app.services.integration_log import record_integration_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthResult:
    store_id: str
    scheme: CredentialScheme


@dataclass(frozen=True)
class _PresentedCredential:
    scheme: CredentialScheme
    identifier: str
    secret: str


def client_ip_from_headers(headers: Mapping[str, str], fallback: Optional[str] = None) -> Optional[str]:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or fallback


def _parse_basic(value: str) -> Optional[_PresentedCredential]:
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    if not username or not password:
        return None
    return _PresentedCredential(CredentialScheme.BASIC_USERNAME_PASSWORD, username, password)


class ShipStationAuthenticator:
    def __init__(self, db: Session, credential_store: CredentialStore):
        self.db = db
        self.credentials = credential_store

    def authenticate(
        self,
        headers: Mapping[str, str],
        store_hint: Optional[str] = None,
        client_host: Optional[str] = None,
    ) -> AuthResult:
        """
        Resolve the calling store from request headers.

        Raises Unauthenticated for missing, malformed or wrong credentials and
        IntegrationDisabled when the credentials are right but the store or its
        integration is switched off. Every attempt is audited.
        """
        started = time.monotonic()
        headers = {k.lower(): v for k, v in headers.items()}
        presented, malformed = self._extract(headers)
        request_data = {
            "methods": [p.scheme.value for p in presented] + [f"malformed:{m}" for m in malformed],
            "ip": client_ip_from_headers(headers, client_host),
            "user_agent": headers.get("user-agent"),
            "store_hint": store_hint,
        }

        if not presented:
            reason = "Malformed credentials" if malformed else "Missing credentials"
            self._audit(None, IntegrationLogStatus.FAILURE, request_data, reason, started)
            raise Unauthenticated(reason)

        for candidate in presented:
            credential = self._match(candidate, store_hint)
            if credential is None:
                continue
            store = self.db.get(Store, credential.store_id)
            if store is None or not store.is_active or not store.integration_enabled:
                self._audit(credential.store_id, IntegrationLogStatus.FAILURE, request_data,
                            "Integration disabled", started)
                raise IntegrationDisabled("ShipStation integration is disabled for this store")
            self._audit(credential.store_id, IntegrationLogStatus.SUCCESS,
                        {**request_data, "method": candidate.scheme.value}, None, started)
            return AuthResult(store_id=credential.store_id, scheme=candidate.scheme)

        self._audit(store_hint, IntegrationLogStatus.FAILURE, request_data, "Invalid credentials", started)
        raise Unauthenticated("Invalid credentials")

    def verify_webhook_signature(self, store_id: str, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check a hex HMAC-SHA256 of the raw body keyed by the store's API secret."""
        if not signature:
            return False
        credential = self.credentials.get_active(store_id, CredentialScheme.API_KEY_SECRET)
        if credential is None:
            return False
        try:
            _, secret = self.credentials.reveal(credential)
        except InvalidToken:
            logger.warning("Stored API secret for store %s could not be decrypted", store_id)
            return False
        if not secret:
            return False
        computed = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, signature.strip().lower())

    def _extract(self, headers: dict) -> tuple[list[_PresentedCredential], list[str]]:
        presented: list[_PresentedCredential] = []
        malformed: list[str] = []

        api_key = (headers.get("x-api-key") or "").strip()
        api_secret = (headers.get("x-api-secret") or "").strip()
        if api_key and api_secret:
            presented.append(_PresentedCredential(CredentialScheme.API_KEY_SECRET, api_key, api_secret))
        elif api_key or api_secret:
            malformed.append(CredentialScheme.API_KEY_SECRET.value)

        authorization = (headers.get("authorization") or "").strip()
        if authorization:
            scheme, _, value = authorization.partition(" ")
            parsed = _parse_basic(value) if scheme.lower() == "basic" else None
            if parsed is None:
                malformed.append(CredentialScheme.BASIC_USERNAME_PASSWORD.value)
            else:
                presented.append(parsed)
        return presented, malformed

    def _match(self, candidate: _PresentedCredential, store_hint: Optional[str]) -> Optional[IntegrationCredential]:
        if store_hint:
            active = self.credentials.get_active(store_hint, candidate.scheme)
            rows = [active] if active is not None else []
        else:
            lookup = self.credentials.cipher.lookup_key(candidate.scheme, candidate.identifier)
            rows = self.credentials.find_active_by_lookup(candidate.scheme, lookup)

        for row in rows:
            try:
                identifier, secret = self.credentials.reveal(row)
            except InvalidToken:
                logger.warning("Credential %s could not be decrypted; treating as mismatch", row.id)
                continue
            # Both comparisons always run
            id_ok = hmac.compare_digest(identifier.encode(), candidate.identifier.encode())
            secret_ok = hmac.compare_digest((secret or "").encode(), candidate.secret.encode())
            if id_ok and secret_ok:
                return row
        return None

    def _audit(self, store_id, status, request_data, error, started):
        record_integration_event(
            self.db,
            store_id=store_id,
            operation=IntegrationOperation.AUTHENTICATION,
            status=status,
            request_data=request_data,
            error_message=error,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )

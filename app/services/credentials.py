"""
Credential encryption/decryption and integration credential storage.

Secrets are Fernet-encrypted at rest. Public identifiers (API key, username)
are also stored as a keyed HMAC so an inbound request can be resolved to its
credential row without decrypting every row.
"""
import base64
import hashlib
import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ResourceNotFound, ValidationFailure
from app.models import CredentialScheme, IntegrationCredential, Store, utcnow

logger = logging.getLogger(__name__)

_API_KEY_ALPHABET = string.ascii_letters + string.digits


def derive_fernet_key(key_str: str) -> bytes:
    """Turn a configured passphrase into a Fernet key."""
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)


class SecretCipher:
    """Encrypts credential material and derives lookup keys for identifiers."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)
        self._pepper = hashlib.sha256(b"lookup:" + key).digest()

    @classmethod
    def from_settings(cls) -> "SecretCipher":
        return cls(derive_fernet_key(settings.ENCRYPTION_KEY))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """Raises cryptography.fernet.InvalidToken on tampered ciphertext."""
        return self._fernet.decrypt(encrypted.encode()).decode()

    def lookup_key(self, scheme: CredentialScheme, identifier: str) -> str:
        msg = f"{CredentialScheme(scheme).value}:{identifier}".encode()
        return hmac.new(self._pepper, msg, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class GeneratedCredential:
    """Plaintext of a freshly issued credential. Only ever returned once."""
    credential_id: str
    store_id: str
    scheme: CredentialScheme
    identifier: str
    secret: Optional[str]


class CredentialStore:
    def __init__(self, db: Session, cipher: SecretCipher):
        self.db = db
        self.cipher = cipher

    def get_active(self, store_id: str, scheme: CredentialScheme) -> Optional[IntegrationCredential]:
        return (
            self.db.query(IntegrationCredential)
            .filter(
                IntegrationCredential.store_id == store_id,
                IntegrationCredential.scheme == scheme,
                IntegrationCredential.is_active.is_(True),
            )
            .first()
        )

    def find_active_by_lookup(self, scheme: CredentialScheme, lookup_key: str) -> list[IntegrationCredential]:
        return (
            self.db.query(IntegrationCredential)
            .filter(
                IntegrationCredential.scheme == scheme,
                IntegrationCredential.lookup_key == lookup_key,
                IntegrationCredential.is_active.is_(True),
            )
            .all()
        )

    def list_for_store(self, store_id: str) -> list[IntegrationCredential]:
        return (
            self.db.query(IntegrationCredential)
            .filter(IntegrationCredential.store_id == store_id)
            .order_by(IntegrationCredential.created_at.desc())
            .all()
        )

    def issue(
        self,
        store_id: str,
        scheme: CredentialScheme,
        identifier: str,
        secret: Optional[str] = None,
    ) -> IntegrationCredential:
        """
        Store a new active credential for (store, scheme). Any previously active
        credential for the pair is soft-disabled in the same transaction.
        """
        scheme = CredentialScheme(scheme)
        if not identifier:
            raise ValidationFailure("Credential identifier is required")
        if scheme != CredentialScheme.REMOTE_API_KEY and not secret:
            raise ValidationFailure(f"A secret is required for {scheme.value} credentials")
        if self.db.get(Store, store_id) is None:
            raise ResourceNotFound(f"Store {store_id} not found")

        now = utcnow()
        try:
            previous = self.get_active(store_id, scheme)
            if previous is not None:
                previous.is_active = False
                previous.rotated_at = now
                previous.disabled_at = now
                # Flush the disable before the insert so the partial unique index holds
                self.db.flush()

            credential = IntegrationCredential(
                store_id=store_id,
                scheme=scheme,
                identifier_encrypted=self.cipher.encrypt(identifier),
                secret_encrypted=self.cipher.encrypt(secret) if secret else None,
                lookup_key=self.cipher.lookup_key(scheme, identifier),
                is_active=True,
                created_at=now,
            )
            self.db.add(credential)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(credential)
        logger.info("Issued %s credential %s for store %s", scheme.value, credential.id, store_id)
        return credential

    def generate(self, store_id: str, scheme: CredentialScheme) -> GeneratedCredential:
        """Generate and issue a system-created credential, returning its plaintext."""
        scheme = CredentialScheme(scheme)
        if scheme == CredentialScheme.API_KEY_SECRET:
            identifier = "".join(secrets.choice(_API_KEY_ALPHABET) for _ in range(32))
            secret = secrets.token_urlsafe(32)
        elif scheme == CredentialScheme.BASIC_USERNAME_PASSWORD:
            identifier = f"ss_{store_id.replace('-', '')[:8]}_{secrets.token_hex(2)}"
            secret = secrets.token_urlsafe(24)
        else:
            raise ValidationFailure("Remote API keys are issued by ShipStation and cannot be generated")

        credential = self.issue(store_id, scheme, identifier, secret)
        return GeneratedCredential(
            credential_id=credential.id,
            store_id=store_id,
            scheme=scheme,
            identifier=identifier,
            secret=secret,
        )

    def disable(self, store_id: str, scheme: CredentialScheme) -> bool:
        """Soft-disable the active credential. Returns False if none was active."""
        credential = self.get_active(store_id, scheme)
        if credential is None:
            return False
        credential.is_active = False
        credential.disabled_at = utcnow()
        self.db.commit()
        logger.info("Disabled %s credential %s for store %s", credential.scheme.value, credential.id, store_id)
        return True

    def reveal(self, credential: IntegrationCredential) -> tuple[str, Optional[str]]:
        """Decrypt (identifier, secret)."""
        identifier = self.cipher.decrypt(credential.identifier_encrypted)
        secret = self.cipher.decrypt(credential.secret_encrypted) if credential.secret_encrypted else None
        return identifier, secret

"""
FastAPI dependencies for the integration services. Tests override these via
app.dependency_overrides.
"""
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.database import SessionLocal, get_db
from app.services.credentials import CredentialStore, SecretCipher
from app.services.job_queue import JobQueue
from app.services.shipstation_auth import ShipStationAuthenticator
from app.services.shipstation_inventory_sync import InventoryFeedClient, build_inventory_client


def get_secret_cipher() -> SecretCipher:
    return SecretCipher.from_settings()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_job_queue(session_factory: sessionmaker = Depends(get_session_factory)) -> JobQueue:
    return JobQueue(session_factory)


def get_credential_store(
    db: Session = Depends(get_db),
    cipher: SecretCipher = Depends(get_secret_cipher),
) -> CredentialStore:
    return CredentialStore(db, cipher)


def get_authenticator(
    db: Session = Depends(get_db),
    credential_store: CredentialStore = Depends(get_credential_store),
) -> ShipStationAuthenticator:
    return ShipStationAuthenticator(db, credential_store)


def get_webhook_timeout() -> float:
    return settings.WEBHOOK_PROCESSING_TIMEOUT


def get_inventory_client_factory(cipher: SecretCipher = Depends(get_secret_cipher)) -> Callable[[Session, str], InventoryFeedClient]:
    return lambda db, store_id: build_inventory_client(db, store_id, cipher)

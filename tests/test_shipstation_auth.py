"""
Tests for ShipStation inbound authentication and credential storage.
"""
import base64
import hashlib
import hmac

import pytest

from app.errors import IntegrationDisabled, Unauthenticated, ValidationFailure
from app.models import CredentialScheme, IntegrationCredential, IntegrationLog, IntegrationLogStatus, IntegrationOperation
from app.services.credentials import CredentialStore
from app.services.shipstation_auth import ShipStationAuthenticator, client_ip_from_headers


def _mutate(value: str) -> str:
    """Change exactly one character."""
    last = value[-1]
    return value[:-1] + ("A" if last != "A" else "B")


@pytest.fixture
def credential_store(db_session, cipher):
    return CredentialStore(db_session, cipher)


@pytest.fixture
def authenticator(db_session, credential_store):
    return ShipStationAuthenticator(db_session, credential_store)


class TestApiKeyAuthentication:
    def test_valid_pair_resolves_store(self, authenticator, store, api_headers):
        result = authenticator.authenticate(api_headers)
        assert result.store_id == store.id
        assert result.scheme == CredentialScheme.API_KEY_SECRET

    def test_valid_pair_with_store_hint(self, authenticator, store, api_headers):
        result = authenticator.authenticate(api_headers, store_hint=store.id)
        assert result.store_id == store.id

    def test_header_names_are_case_insensitive(self, authenticator, store, api_credentials):
        headers = {"x-api-key": api_credentials.identifier, "X-Api-Secret": api_credentials.secret}
        assert authenticator.authenticate(headers).store_id == store.id

    def test_single_byte_mutation_of_secret_is_rejected(self, authenticator, api_credentials):
        headers = {"X-API-Key": api_credentials.identifier, "X-API-Secret": _mutate(api_credentials.secret)}
        with pytest.raises(Unauthenticated):
            authenticator.authenticate(headers)

    def test_single_byte_mutation_of_key_is_rejected(self, authenticator, store, api_credentials):
        headers = {"X-API-Key": _mutate(api_credentials.identifier), "X-API-Secret": api_credentials.secret}
        with pytest.raises(Unauthenticated):
            authenticator.authenticate(headers)
        with pytest.raises(Unauthenticated):
            authenticator.authenticate(headers, store_hint=store.id)

    def test_credentials_of_another_store_do_not_match_hint(self, authenticator, other_store, api_headers):
        with pytest.raises(Unauthenticated):
            authenticator.authenticate(api_headers, store_hint=other_store.id)

    def test_missing_credentials(self, authenticator):
        with pytest.raises(Unauthenticated) as exc:
            authenticator.authenticate({"User-Agent": "ShipStation"})
        assert exc.value.message == "Missing credentials"

    def test_half_a_pair_is_malformed(self, authenticator, api_credentials):
        with pytest.raises(Unauthenticated) as exc:
            authenticator.authenticate({"X-API-Key": api_credentials.identifier})
        assert exc.value.message == "Malformed credentials"


class TestBasicAuthentication:
    def test_valid_basic_credentials(self, authenticator, store, basic_credentials, basic_headers):
        assert basic_credentials.identifier.startswith(f"ss_{store.id.replace('-', '')[:8]}_")
        result = authenticator.authenticate(basic_headers)
        assert result.store_id == store.id
        assert result.scheme == CredentialScheme.BASIC_USERNAME_PASSWORD

    def test_wrong_password(self, authenticator, basic_credentials):
        token = base64.b64encode(f"{basic_credentials.identifier}:{_mutate(basic_credentials.secret)}".encode()).decode()
        with pytest.raises(Unauthenticated):
            authenticator.authenticate({"Authorization": f"Basic {token}"})

    def test_undecodable_basic_header_is_malformed(self, authenticator):
        with pytest.raises(Unauthenticated) as exc:
            authenticator.authenticate({"Authorization": "Basic not-base64!!"})
        assert exc.value.message == "Malformed credentials"

    def test_bearer_scheme_is_malformed(self, authenticator):
        with pytest.raises(Unauthenticated):
            authenticator.authenticate({"Authorization": "Bearer abc"})

    def test_either_scheme_is_enough(self, authenticator, store, api_credentials, basic_headers):
        headers = {**basic_headers, "X-API-Key": "wrong", "X-API-Secret": "wrong"}
        assert authenticator.authenticate(headers).store_id == store.id


class TestStoreState:
    def test_disabled_integration(self, authenticator, db_session, store, api_headers):
        store.integration_enabled = False
        db_session.commit()
        with pytest.raises(IntegrationDisabled):
            authenticator.authenticate(api_headers)

    def test_inactive_store(self, authenticator, db_session, store, api_headers):
        store.is_active = False
        db_session.commit()
        with pytest.raises(IntegrationDisabled):
            authenticator.authenticate(api_headers)


class TestCredentialLifecycle:
    def test_secrets_are_encrypted_at_rest(self, db_session, api_credentials):
        row = db_session.get(IntegrationCredential, api_credentials.credential_id)
        assert api_credentials.identifier not in row.identifier_encrypted
        assert api_credentials.secret not in row.secret_encrypted

    def test_rotation_invalidates_previous_credential(self, authenticator, credential_store, store, api_credentials):
        old_headers = {"X-API-Key": api_credentials.identifier, "X-API-Secret": api_credentials.secret}
        rotated = credential_store.generate(store.id, CredentialScheme.API_KEY_SECRET)

        with pytest.raises(Unauthenticated):
            authenticator.authenticate(old_headers)
        new_headers = {"X-API-Key": rotated.identifier, "X-API-Secret": rotated.secret}
        assert authenticator.authenticate(new_headers).store_id == store.id

        active = [c for c in credential_store.list_for_store(store.id) if c.is_active]
        assert len(active) == 1
        assert active[0].id == rotated.credential_id

    def test_disable(self, authenticator, credential_store, store, api_headers):
        assert credential_store.disable(store.id, CredentialScheme.API_KEY_SECRET) is True
        assert credential_store.disable(store.id, CredentialScheme.API_KEY_SECRET) is False
        with pytest.raises(Unauthenticated):
            authenticator.authenticate(api_headers)

    def test_remote_keys_cannot_be_generated(self, credential_store, store):
        with pytest.raises(ValidationFailure):
            credential_store.generate(store.id, CredentialScheme.REMOTE_API_KEY)

    def test_secret_required_for_inbound_schemes(self, credential_store, store):
        with pytest.raises(ValidationFailure):
            credential_store.issue(store.id, CredentialScheme.API_KEY_SECRET, "key-only")


class TestAudit:
    def test_every_attempt_is_logged(self, authenticator, db_session, store, api_headers):
        authenticator.authenticate(api_headers)
        with pytest.raises(Unauthenticated):
            authenticator.authenticate({})

        logs = (
            db_session.query(IntegrationLog)
            .filter(IntegrationLog.operation == IntegrationOperation.AUTHENTICATION)
            .all()
        )
        statuses = sorted(log.status.value for log in logs)
        assert statuses == [IntegrationLogStatus.FAILURE.value, IntegrationLogStatus.SUCCESS.value]
        success = next(log for log in logs if log.status == IntegrationLogStatus.SUCCESS)
        assert success.store_id == store.id

    def test_secrets_never_reach_the_log(self, authenticator, db_session, api_credentials, api_headers):
        authenticator.authenticate({**api_headers, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        log = db_session.query(IntegrationLog).one()
        assert api_credentials.secret not in str(log.request_data)
        assert log.request_data["ip"] == "203.0.113.9"


class TestWebhookSignature:
    def test_valid_signature(self, authenticator, store, api_credentials):
        body = b'{"resource_type": "ITEM_SHIP_NOTIFY"}'
        signature = hmac.new(api_credentials.secret.encode(), body, hashlib.sha256).hexdigest()
        assert authenticator.verify_webhook_signature(store.id, body, signature) is True

    def test_signature_over_different_body(self, authenticator, store, api_credentials):
        signature = hmac.new(api_credentials.secret.encode(), b"original", hashlib.sha256).hexdigest()
        assert authenticator.verify_webhook_signature(store.id, b"tampered", signature) is False

    def test_no_credentials_no_signature_match(self, authenticator, other_store):
        assert authenticator.verify_webhook_signature(other_store.id, b"{}", "00" * 32) is False


def test_client_ip_prefers_forwarded_header():
    assert client_ip_from_headers({"x-forwarded-for": "198.51.100.1, 10.0.0.2"}, "127.0.0.1") == "198.51.100.1"
    assert client_ip_from_headers({"x-real-ip": "198.51.100.7"}, "127.0.0.1") == "198.51.100.7"
    assert client_ip_from_headers({}, "127.0.0.1") == "127.0.0.1"

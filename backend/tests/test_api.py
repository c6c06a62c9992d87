"""HTTP tests for the command surface."""

from typing import AsyncGenerator

import httpx
import pytest

from certvault.api.common import get_vault_session
from certvault.core.vault import VaultSession
from certvault.database import get_db
from certvault.main import app

from conftest import OTHER_PASSWORD, PASSWORD, external_certificate

SETUP = {
    "owner_email": "owner@test.local",
    "ca_name": "Test CA",
    "hostname_suffix": ".test.local",
    "default_organization": "Test Org",
    "default_city": "Paris",
    "default_state": "IDF",
    "default_country": "FR",
    "default_key_size": 2048,
}


@pytest.fixture
def api_session() -> VaultSession:
    return VaultSession("api")


@pytest.fixture
async def client(db_session, api_session) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client bound to the test database and a private vault session."""
    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_vault_session] = lambda: api_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def ready(client, root_ca) -> httpx.AsyncClient:
    """Configured CA with an unlocked vault."""
    response = await client.post("/v1/config/setup", json={**SETUP, "ca_certificate_pem": root_ca.cert_pem})
    assert response.status_code == 201
    response = await client.post("/v1/vault/unlock", json={"password": PASSWORD})
    assert response.status_code == 200
    return client


async def request_csr(client: httpx.AsyncClient, hostname: str, **extra) -> str:
    response = await client.post("/v1/certificates/csr", json={"hostname": hostname, **extra})
    assert response.status_code == 201, response.text
    return response.json()["csr_pem"]


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert "X-Request-ID" in response.headers


class TestVaultRoutes:
    """Tests for /v1/vault."""

    @pytest.mark.asyncio
    async def test_unlock_lifecycle(self, client):
        response = await client.get("/v1/vault/status")
        assert response.json()["initialized"] is False

        response = await client.post("/v1/vault/unlock", json={"password": "short"})
        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "password"

        response = await client.post("/v1/vault/unlock", json={"password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["valid"] is True

        response = await client.get("/v1/vault/status")
        assert response.json()["initialized"] is True
        assert response.json()["unlocked"] is True

        response = await client.post("/v1/vault/lock")
        assert response.status_code == 204

        response = await client.post("/v1/vault/unlock", json={"password": OTHER_PASSWORD})
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "wrong_password"

    @pytest.mark.asyncio
    async def test_rotate(self, ready):
        await request_csr(ready, "web.test.local")

        response = await ready.post("/v1/vault/rotate", json={"new_password": OTHER_PASSWORD})
        assert response.status_code == 204

        await ready.post("/v1/vault/lock")
        response = await ready.post("/v1/vault/unlock", json={"password": OTHER_PASSWORD})
        assert response.json() == {"valid": True, "failed_hostnames": []}

    @pytest.mark.asyncio
    async def test_security_keys(self, ready):
        response = await ready.get("/v1/vault/keys")
        assert [k["label"] for k in response.json()] == ["Password"]
        first_id = response.json()[0]["id"]
        assert "wrapped_master_key" not in response.json()[0]

        response = await ready.post("/v1/vault/keys", json={"password": OTHER_PASSWORD, "label": "laptop"})
        assert response.status_code == 201
        assert response.json()["label"] == "laptop"
        second_id = response.json()["id"]

        await ready.post("/v1/vault/lock")
        response = await ready.post("/v1/vault/unlock", json={"password": OTHER_PASSWORD})
        assert response.status_code == 200

        response = await ready.delete(f"/v1/vault/keys/{second_id}")
        assert response.status_code == 204
        response = await ready.delete(f"/v1/vault/keys/{first_id}")
        assert response.status_code == 409
        response = await ready.delete("/v1/vault/keys/9999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_enroll_locked(self, ready):
        await ready.post("/v1/vault/lock")

        response = await ready.post("/v1/vault/keys", json={"password": OTHER_PASSWORD})

        assert response.status_code == 423

    @pytest.mark.asyncio
    async def test_rotate_locked(self, ready):
        await ready.post("/v1/vault/lock")

        response = await ready.post("/v1/vault/rotate", json={"new_password": OTHER_PASSWORD})

        assert response.status_code == 423


class TestConfigRoutes:
    """Tests for /v1/config."""

    @pytest.mark.asyncio
    async def test_setup_flow(self, client):
        response = await client.get("/v1/config")
        assert response.status_code == 404

        response = await client.get("/v1/config/configured")
        assert response.json() == {"configured": False}

        response = await client.post("/v1/config/setup", json=SETUP)
        assert response.status_code == 201
        assert response.json()["hostname_suffix"] == ".test.local"

        response = await client.post("/v1/config/setup", json=SETUP)
        assert response.status_code == 409

        response = await client.put("/v1/config", json={**SETUP, "ca_name": "Renamed"})
        assert response.status_code == 200
        assert response.json()["ca_name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_setup_validation(self, client):
        response = await client.post("/v1/config/setup", json={**SETUP, "default_country": "France"})

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "default_country"

    @pytest.mark.asyncio
    async def test_reset(self, ready, api_session):
        response = await ready.post("/v1/config/reset")

        assert response.status_code == 204
        assert not api_session.is_unlocked
        assert (await ready.get("/v1/config/configured")).json() == {"configured": False}


class TestCertificateRoutes:
    """Tests for /v1/certificates."""

    @pytest.mark.asyncio
    async def test_csr_upload_download(self, ready, root_ca):
        csr_pem = await request_csr(ready, "web.test.local", note="front")

        response = await ready.get("/v1/certificates", params={"status": "pending"})
        assert [item["hostname"] for item in response.json()] == ["web.test.local"]

        response = await ready.get("/v1/certificates/web.test.local/csr.pem")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-pem-file")
        assert response.text == csr_pem

        cert_pem = root_ca.sign_csr(csr_pem)
        response = await ready.post(
            "/v1/certificates/web.test.local/upload/preview", json={"certificate_pem": cert_pem}
        )
        assert response.json()["csr_match"] is True
        assert response.json()["key_match"] is True

        response = await ready.post("/v1/certificates/web.test.local/upload", json={"certificate_pem": cert_pem})
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["note"] == "front"

        response = await ready.get("/v1/certificates/web.test.local/private-key.pem")
        assert response.status_code == 200
        assert "BEGIN PRIVATE KEY" in response.text

        response = await ready.get("/v1/certificates/web.test.local/chain")
        assert [c["cert_type"] for c in response.json()] == ["leaf", "root"]

        response = await ready.get("/v1/certificates/web.test.local/history")
        assert [e["event_type"] for e in response.json()] == ["certificate_uploaded", "csr_generated"]

    @pytest.mark.asyncio
    async def test_csr_requires_unlocked_vault(self, ready):
        await ready.post("/v1/vault/lock")

        response = await ready.post("/v1/certificates/csr", json={"hostname": "web.test.local"})

        assert response.status_code == 423
        assert response.json()["detail"]["code"] == "key_required"

    @pytest.mark.asyncio
    async def test_error_statuses(self, ready, root_ca):
        await request_csr(ready, "web.test.local")

        response = await ready.post("/v1/certificates/csr", json={"hostname": "web.test.local"})
        assert response.status_code == 409

        response = await ready.post("/v1/certificates/csr", json={"hostname": "web.example.com"})
        assert response.status_code == 400

        response = await ready.post(
            "/v1/certificates/csr", json={"hostname": "api.test.local", "country": "France"}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "country"

        response = await ready.get("/v1/certificates/ghost.test.local")
        assert response.status_code == 404

        response = await ready.post(
            "/v1/certificates/web.test.local/upload", json={"certificate_pem": "garbage"}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_format"

        foreign_pem, _ = external_certificate(root_ca, "web.test.local")
        response = await ready.post(
            "/v1/certificates/web.test.local/upload", json={"certificate_pem": foreign_pem}
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "key_mismatch"

        response = await ready.put("/v1/certificates/web.test.local/read-only", json={"read_only": True})
        assert response.json()["read_only"] is True
        response = await ready.delete("/v1/certificates/web.test.local")
        assert response.status_code == 403

        response = await ready.get("/v1/certificates/web.test.local/history", params={"limit": -1})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_import_and_notes(self, ready, root_ca):
        cert_pem, key_pem = external_certificate(root_ca, "api.test.local")

        response = await ready.post(
            "/v1/certificates/import", json={"certificate_pem": cert_pem, "private_key_pem": key_pem}
        )
        assert response.status_code == 201
        assert response.json()["hostname"] == "api.test.local"

        response = await ready.put("/v1/certificates/api.test.local/note", json={"note": "legacy"})
        assert response.json()["note"] == "legacy"

        response = await ready.get("/v1/certificates/api.test.local/certificate.pem")
        assert response.text == cert_pem

        response = await ready.delete("/v1/certificates/api.test.local")
        assert response.status_code == 204
        response = await ready.get("/v1/certificates/api.test.local/history")
        assert response.json()[0]["event_type"] == "certificate_deleted"


class TestBackupRoutes:
    """Tests for /v1/backups."""

    @pytest.mark.asyncio
    async def test_export_validate_restore(self, ready):
        await request_csr(ready, "web.test.local")

        response = await ready.get("/v1/backups/export")
        assert response.status_code == 200
        bundle = response.json()
        assert "encryption_key" not in bundle
        assert [c["hostname"] for c in bundle["certificates"]] == ["web.test.local"]

        response = await ready.post("/v1/backups/validate", json={"bundle": bundle})
        assert response.json()["valid"] is True

        await ready.delete("/v1/certificates/web.test.local")
        response = await ready.post("/v1/backups/restore", json={"bundle": bundle})
        assert response.status_code == 200
        assert response.json() == {"restored": 1}

        response = await ready.get("/v1/certificates/web.test.local/pending-private-key.pem")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_export_with_password(self, ready):
        response = await ready.get("/v1/backups/export", params={"include_raw_key": True})

        assert response.json()["encryption_key"] == PASSWORD

    @pytest.mark.asyncio
    async def test_local_backups_disabled(self, ready):
        response = await ready.post("/v1/backups/local")

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "backup_dir"

    @pytest.mark.asyncio
    async def test_local_backups(self, ready, backup_dir):
        response = await ready.post("/v1/backups/local")
        assert response.status_code == 201
        filename = response.json()["filename"]

        response = await ready.get("/v1/backups/local")
        assert [b["filename"] for b in response.json()] == [filename]

        response = await ready.delete(f"/v1/backups/local/{filename}")
        assert response.status_code == 204

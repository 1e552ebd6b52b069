import pytest

from trustguard.infra.jwt import encode_access
from trustguard.settings import settings


@pytest.mark.asyncio
async def test_liveness(api_client):
    response = await api_client.get("/health/live")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == settings.service_name


@pytest.mark.asyncio
async def test_metrics_require_admin_token(api_client, admin_headers):
    anonymous = await api_client.get("/metrics")
    assert anonymous.status_code == 403
    assert anonymous.json()["detail"] == "forbidden"

    # dev headers are not enough for the scrape endpoint
    with_headers = await api_client.get("/metrics", headers=admin_headers)
    assert with_headers.status_code == 403


@pytest.mark.asyncio
async def test_metrics_with_admin_bearer(api_client):
    token = encode_access({"sub": "did:plc:admin", "roles": ["admin"]})
    response = await api_client.get("/metrics", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert "trustguard_trust_recompute_total" in response.text

    member = encode_access({"sub": "did:plc:member", "roles": ["member"]})
    denied = await api_client.get("/metrics", headers={"Authorization": f"Bearer {member}"})
    assert denied.status_code == 403
    assert denied.json()["detail"] == "insufficient_role"

    garbage = await api_client.get("/metrics", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_public_metrics(api_client):
    settings.obs_metrics_public = True
    response = await api_client.get("/metrics")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_errors_carry_request_id(api_client, admin_headers):
    response = await api_client.get(
        "/api/admin/sybil-clusters/missing",
        headers={**admin_headers, "X-Request-Id": "req-123"},
    )
    assert response.status_code == 404
    assert response.json() == {"detail": "cluster_not_found", "request_id": "req-123"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_bearer_token_authenticates_admin_routes(api_client):
    settings.environment = "production"
    token = encode_access({"sub": "did:plc:admin", "roles": "admin"})
    response = await api_client.get("/api/admin/trust-seeds", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200

    # outside development the dev headers are ignored
    ignored = await api_client.get("/api/admin/trust-seeds", headers={"X-User-Did": "did:plc:admin", "X-User-Roles": "admin"})
    assert ignored.status_code == 401

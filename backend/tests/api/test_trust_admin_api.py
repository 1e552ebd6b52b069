from datetime import datetime, timezone

import pytest

from trustguard.trust.domain import container
from trustguard.trust.domain.behavioral import ReactionRecord
from trustguard.trust.domain.models import Account

COMMUNITY = "did:plc:community"
SYBILS = ["did:plc:s1", "did:plc:s2", "did:plc:s3", "did:plc:s4"]


async def _seed_sybil_ring(trust_env) -> None:
    trust_env.accounts.add(Account(did="did:plc:admin", role="admin"))
    for did in SYBILS:
        trust_env.accounts.add(Account(did=did))
    recorder = container.get_recorder()
    await recorder.record_reply("did:plc:admin", "did:plc:honest", COMMUNITY)
    for source, target in [
        ("did:plc:s1", "did:plc:s2"),
        ("did:plc:s1", "did:plc:s3"),
        ("did:plc:s1", "did:plc:s4"),
        ("did:plc:s2", "did:plc:s3"),
        ("did:plc:s2", "did:plc:s4"),
    ]:
        await recorder.record_reaction(source, target, COMMUNITY)


@pytest.mark.asyncio
async def test_admin_routes_require_authentication(api_client):
    response = await api_client.get("/api/admin/trust-seeds")
    assert response.status_code == 401
    assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_admin_routes_reject_plain_users(api_client, user_headers, moderator_headers):
    for headers in (user_headers, moderator_headers):
        response = await api_client.get("/api/admin/sybil-clusters", headers=headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "insufficient_role"


@pytest.mark.asyncio
async def test_trust_seed_crud(api_client, admin_headers, trust_env):
    trust_env.accounts.add(Account(did="did:plc:admin", role="admin"))
    missing = await api_client.post("/api/admin/trust-seeds", json={"did": "did:plc:alice"}, headers=admin_headers)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "account_not_found"

    trust_env.accounts.add(Account(did="did:plc:alice", handle="alice.test"))
    created = await api_client.post(
        "/api/admin/trust-seeds",
        json={"did": "did:plc:alice", "reason": "long-standing member"},
        headers=admin_headers,
    )
    assert created.status_code == 201
    seed = created.json()
    assert seed["handle"] == "alice.test"
    assert seed["added_by"] == "did:plc:admin"
    assert seed["community_did"] is None

    duplicate = await api_client.post("/api/admin/trust-seeds", json={"did": "did:plc:alice"}, headers=admin_headers)
    assert duplicate.status_code == 409

    listing = await api_client.get("/api/admin/trust-seeds", headers=admin_headers)
    assert listing.status_code == 200
    body = listing.json()
    assert [item["did"] for item in body["items"]] == ["did:plc:alice"]
    assert [item["did"] for item in body["implicit"]] == ["did:plc:admin"]
    assert body["implicit"][0]["implicit"] is True

    deleted = await api_client.delete(f"/api/admin/trust-seeds/{seed['id']}", headers=admin_headers)
    assert deleted.status_code == 204
    again = await api_client.delete(f"/api/admin/trust-seeds/{seed['id']}", headers=admin_headers)
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_list_limit_is_bounded(api_client, admin_headers):
    response = await api_client.get("/api/admin/trust-seeds?limit=500", headers=admin_headers)
    assert response.status_code == 422
    assert response.json()["detail"] == "validation_error"


@pytest.mark.asyncio
async def test_recompute_and_cooldown(api_client, admin_headers, trust_env):
    await _seed_sybil_ring(trust_env)

    first = await api_client.post("/api/admin/trust-graph/recompute?wait=true", headers=admin_headers)
    assert first.status_code == 200
    payload = first.json()
    assert payload["status"] == "completed"
    assert payload["result"]["total_nodes"] == 6
    assert payload["result"]["total_edges"] == 6

    blocked = await api_client.post("/api/admin/trust-graph/recompute?wait=true", headers=admin_headers)
    assert blocked.status_code == 429
    assert blocked.json()["detail"] == "recompute_cooldown"
    assert int(blocked.headers["Retry-After"]) > 0

    forced = await api_client.post("/api/admin/trust-graph/recompute?wait=true&force=true", headers=admin_headers)
    assert forced.status_code == 200

    status = await api_client.get("/api/admin/trust-graph/status", headers=admin_headers)
    assert status.status_code == 200
    body = status.json()
    assert body["total_nodes"] == 6
    assert body["flagged_clusters"] == 1
    assert body["job"]["status"] == "completed"


@pytest.mark.asyncio
async def test_recompute_runs_in_background(api_client, admin_headers):
    response = await api_client.post("/api/admin/trust-graph/recompute", headers=admin_headers)
    assert response.status_code == 202
    assert response.json()["status"] == "accepted"

    job = container.get_trust_graph_job()
    await job._task
    assert job.state.status == "completed"


@pytest.mark.asyncio
async def test_cluster_review_and_ban(api_client, admin_headers, trust_env):
    await _seed_sybil_ring(trust_env)
    await api_client.post("/api/admin/trust-graph/recompute?wait=true", headers=admin_headers)

    listing = await api_client.get("/api/admin/sybil-clusters?status=flagged&sort=member_count", headers=admin_headers)
    assert listing.status_code == 200
    [cluster] = listing.json()["items"]
    assert cluster["member_count"] == 4
    assert cluster["suspicion_ratio"] == 1.0

    detail = await api_client.get(f"/api/admin/sybil-clusters/{cluster['id']}", headers=admin_headers)
    assert detail.status_code == 200
    members = detail.json()["members"]
    assert [member["did"] for member in members] == SYBILS
    assert {member["role"] for member in members} == {"core", "peripheral"}

    invalid = await api_client.put(
        f"/api/admin/sybil-clusters/{cluster['id']}", json={"status": "flagged"}, headers=admin_headers
    )
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "invalid_status"

    banned = await api_client.put(
        f"/api/admin/sybil-clusters/{cluster['id']}", json={"status": "banned"}, headers=admin_headers
    )
    assert banned.status_code == 200
    body = banned.json()
    assert body["cluster"]["status"] == "banned"
    assert body["cluster"]["reviewed_by"] == "did:plc:admin"
    assert body["propagation"]["banned_dids"] == ["did:plc:s1", "did:plc:s2"]
    assert body["propagation"]["monitored_dids"] == ["did:plc:s3", "did:plc:s4"]
    assert trust_env.accounts.accounts["did:plc:s1"].is_banned is True


@pytest.mark.asyncio
async def test_cluster_listing_validates_query(api_client, admin_headers):
    bad_sort = await api_client.get("/api/admin/sybil-clusters?sort=loudest", headers=admin_headers)
    assert bad_sort.status_code == 422
    bad_status = await api_client.get("/api/admin/sybil-clusters?status=angry", headers=admin_headers)
    assert bad_status.status_code == 400
    bad_cursor = await api_client.get("/api/admin/sybil-clusters?cursor=nope", headers=admin_headers)
    assert bad_cursor.status_code == 400
    missing = await api_client.get("/api/admin/sybil-clusters/unknown", headers=admin_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_pds_trust_management(api_client, admin_headers):
    created = await api_client.put(
        "/api/admin/pds-trust", json={"pds_host": "PDS.Example.com", "trust_factor": 0.8}, headers=admin_headers
    )
    assert created.status_code == 200
    assert created.json()["pds_host"] == "pds.example.com"
    assert created.json()["is_default"] is False

    out_of_range = await api_client.put(
        "/api/admin/pds-trust", json={"pds_host": "pds.example.com", "trust_factor": 1.5}, headers=admin_headers
    )
    assert out_of_range.status_code == 400
    assert out_of_range.json()["detail"] == "invalid_trust_factor"

    bad_host = await api_client.put(
        "/api/admin/pds-trust", json={"pds_host": "not a host", "trust_factor": 0.5}, headers=admin_headers
    )
    assert bad_host.status_code == 400

    default = await api_client.put("/api/admin/pds-trust/default", json={"trust_factor": 0.2}, headers=admin_headers)
    assert default.status_code == 200
    assert default.json()["is_default"] is True
    assert await container.get_pds_table().factor_for("unknown.example.com") == 0.2

    listing = await api_client.get("/api/admin/pds-trust", headers=admin_headers)
    assert sorted(row["pds_host"] for row in listing.json()["items"]) == ["*", "pds.example.com"]


@pytest.mark.asyncio
async def test_behavioral_flag_review(api_client, admin_headers, trust_env):
    now = datetime.now(timezone.utc)
    for i in range(25):
        trust_env.activity.reactions.append(
            ReactionRecord(author_did="did:plc:voter", subject_uri=f"at://post/{i}", community_did=COMMUNITY, created_at=now)
        )
    await container.get_heuristics().run_all()

    listing = await api_client.get("/api/admin/behavioral-flags?flag_type=burst_voting", headers=admin_headers)
    assert listing.status_code == 200
    [flag] = listing.json()["items"]
    assert flag["affected_dids"] == ["did:plc:voter"]

    reviewed = await api_client.put(
        f"/api/admin/behavioral-flags/{flag['id']}", json={"status": "dismissed"}, headers=admin_headers
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["status"] == "dismissed"

    invalid = await api_client.put(
        f"/api/admin/behavioral-flags/{flag['id']}", json={"status": "pending"}, headers=admin_headers
    )
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_account_ban_with_propagation(api_client, admin_headers, trust_env):
    for did in ("did:plc:target", "did:plc:friend", "did:plc:alt"):
        trust_env.accounts.add(Account(did=did))
    trust_env.accounts.accounts["did:plc:friend"].is_banned = True
    recorder = container.get_recorder()
    for _ in range(3):
        await recorder.record_reply("did:plc:target", "did:plc:friend", COMMUNITY)
        await recorder.record_reply("did:plc:alt", "did:plc:target", COMMUNITY)

    response = await api_client.post(
        "/api/admin/accounts/did:plc:target/ban", json={"reason": "spam ring"}, headers=admin_headers
    )
    assert response.status_code == 200
    body = response.json()
    assert body["account"]["is_banned"] is True
    assert body["propagation"] == {"propagated": True, "ban_count": 2, "filtered_dids": ["did:plc:alt"], "error": None}

    unbanned = await api_client.post("/api/admin/accounts/did:plc:target/unban", headers=admin_headers)
    assert unbanned.status_code == 200
    assert unbanned.json()["is_banned"] is False

    missing = await api_client.post("/api/admin/accounts/did:plc:ghost/ban", headers=admin_headers)
    assert missing.status_code == 404

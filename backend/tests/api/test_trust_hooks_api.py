import pytest

COMMUNITY = "did:plc:community"
USER_DID = "did:plc:member"


def _reply(content: str = "hello there", uri: str | None = None) -> dict:
    payload = {"community_did": COMMUNITY, "content_type": "reply", "content": content}
    if uri:
        payload["content_uri"] = uri
    return payload


@pytest.mark.asyncio
async def test_write_check_requires_authentication(api_client):
    response = await api_client.post("/api/trust/write-check", json=_reply())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_new_account_writes_are_held_then_rate_limited(api_client, user_headers):
    for _ in range(3):
        response = await api_client.post("/api/trust/write-check", json=_reply(), headers=user_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["account_class"] == "new"
        assert body["held"] is True
        assert "first_post" in [reason["reason"] for reason in body["reasons"]]

    limited = await api_client.post("/api/trust/write-check", json=_reply(), headers=user_headers)
    assert limited.status_code == 429
    body = limited.json()
    assert body["detail"] == "rate_limited"
    assert body["scope"] == "write:new"
    assert limited.headers["Retry-After"] == "60"


@pytest.mark.asyncio
async def test_new_account_topics_are_delayed(api_client, user_headers):
    payload = {"community_did": COMMUNITY, "content_type": "topic", "title": "Hello", "content": "first topic"}
    response = await api_client.post("/api/trust/write-check", json=payload, headers=user_headers)
    assert response.status_code == 403
    assert response.json()["detail"] == {"code": "topic_creation_delayed"}


@pytest.mark.asyncio
async def test_write_check_validates_content_type(api_client, user_headers):
    payload = {"community_did": COMMUNITY, "content_type": "poll", "content": "?"}
    response = await api_client.post("/api/trust/write-check", json=payload, headers=user_headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_held_content_is_reviewed_by_moderators(api_client, user_headers, moderator_headers, trust_env):
    trust_env.community_settings.rows[COMMUNITY] = {"trusted_post_threshold": 1}
    check = await api_client.post(
        "/api/trust/write-check",
        json=_reply("first post https://x.example", uri="at://did:plc:member/post/1"),
        headers=user_headers,
    )
    assert check.json()["held"] is True

    denied = await api_client.get("/api/admin/moderation-queue", headers=user_headers)
    assert denied.status_code == 403

    listing = await api_client.get(f"/api/admin/moderation-queue?community_did={COMMUNITY}", headers=moderator_headers)
    assert listing.status_code == 200
    items = listing.json()["items"]
    assert sorted(item["queue_reason"] for item in items) == ["first_post", "link_hold"]
    assert {item["author_did"] for item in items} == {USER_DID}

    approved = await api_client.post(f"/api/admin/moderation-queue/{items[0]['id']}/approve", headers=moderator_headers)
    assert approved.status_code == 200
    outcome = approved.json()
    assert outcome["approved"] is True
    assert outcome["removed_entries"] == 2
    assert outcome["author_trusted"] is True

    again = await api_client.post(f"/api/admin/moderation-queue/{items[1]['id']}/reject", headers=moderator_headers)
    assert again.status_code == 404

    # an approved author is trusted and skips the gate entirely
    trusted = await api_client.post("/api/trust/write-check", json=_reply(), headers=user_headers)
    assert trusted.json() == {"account_class": "trusted", "held": False, "reasons": []}


@pytest.mark.asyncio
async def test_record_interactions(api_client, user_headers, trust_env):
    reply = await api_client.post(
        "/api/trust/interactions",
        json={"interaction_type": "reply", "community_did": COMMUNITY, "target_did": "did:plc:friend"},
        headers=user_headers,
    )
    assert reply.status_code == 200
    assert reply.json() == {"recorded": 1}

    self_reaction = await api_client.post(
        "/api/trust/interactions",
        json={"interaction_type": "reaction", "community_did": COMMUNITY, "target_did": USER_DID},
        headers=user_headers,
    )
    assert self_reaction.json() == {"recorded": 0}

    [edge] = await trust_env.interactions.list_edges()
    assert (edge.source_did, edge.target_did, edge.interaction_type) == (USER_DID, "did:plc:friend", "reply")


@pytest.mark.asyncio
async def test_interaction_payload_validation(api_client, user_headers):
    missing_target = await api_client.post(
        "/api/trust/interactions",
        json={"interaction_type": "reply", "community_did": COMMUNITY},
        headers=user_headers,
    )
    assert missing_target.status_code == 400
    assert missing_target.json()["detail"] == "target_did_required"

    missing_topic = await api_client.post(
        "/api/trust/interactions",
        json={"interaction_type": "co_participation", "community_did": COMMUNITY},
        headers=user_headers,
    )
    assert missing_topic.status_code == 400
    assert missing_topic.json()["detail"] == "topic_uri_required"


@pytest.mark.asyncio
async def test_co_participation_hook(api_client, user_headers, trust_env):
    topic = "at://did:plc:op/topic/9"
    for author in ("did:plc:a", "did:plc:b", "did:plc:c"):
        trust_env.interactions.add_reply(topic, author)
    response = await api_client.post(
        "/api/trust/interactions",
        json={"interaction_type": "co_participation", "community_did": COMMUNITY, "topic_uri": topic},
        headers=user_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"recorded": 3}

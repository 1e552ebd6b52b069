from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from trustguard.infra.rate_limit import RateLimitExceeded
from trustguard.trust.domain import container
from trustguard.trust.domain.accounts import AccountTrustRecord
from trustguard.trust.domain.anti_spam import (
    ACCOUNT_ESTABLISHED,
    ACCOUNT_NEW,
    ACCOUNT_TRUSTED,
    AntiSpamService,
    ContentSubmission,
    check_word_filter,
    contains_url,
)
from trustguard.trust.domain.config import AntiSpamSettings
from trustguard.trust.domain.exceptions import NotFoundError
from trustguard.trust.domain.models import Account

COMMUNITY = "did:plc:community"
AUTHOR = "did:plc:author"


def _service_with(counters, trust_env, *, fail_open: bool) -> AntiSpamService:
    return AntiSpamService(
        counters=counters,
        accounts=trust_env.accounts,
        account_trust=trust_env.account_trust,
        community_settings=trust_env.community_settings,
        spam_labels=trust_env.spam_labels,
        pds_table=container.get_pds_table(),
        engine=container.get_engine(),
        trust_settings=trust_env.settings,
        fail_open=fail_open,
    )


def _submission(content: str = "hello there", *, content_type: str = "reply", uri: str | None = "at://post/1") -> ContentSubmission:
    return ContentSubmission(
        author_did=AUTHOR,
        community_did=COMMUNITY,
        content_type=content_type,
        content=content,
        content_uri=uri,
    )


def _establish(trust_env, *, approved: int = 2) -> None:
    trust_env.accounts.add(Account(did=AUTHOR, first_seen_at=datetime.now(timezone.utc) - timedelta(days=30)))
    trust_env.account_trust.put(AccountTrustRecord(did=AUTHOR, community_did=COMMUNITY, approved_post_count=approved))


def _trust(trust_env) -> None:
    trust_env.account_trust.put(
        AccountTrustRecord(did=AUTHOR, community_did=COMMUNITY, approved_post_count=10, is_trusted=True)
    )


def test_word_filter_matches_whole_words_only() -> None:
    assert check_word_filter("Buy CHEAP pills", None, ["cheap", "pill"]) == ["cheap"]
    assert check_word_filter("nothing here", "Casino night", ["casino"]) == ["casino"]
    assert check_word_filter("anything", None, []) == []


def test_url_detection() -> None:
    assert contains_url("see https://example.com/x")
    assert contains_url("go to www.example.com")
    assert not contains_url("no links here")


@pytest.mark.asyncio
async def test_account_classes(trust_env) -> None:
    service = container.get_anti_spam()
    settings = AntiSpamSettings()
    assert await service.account_class(AUTHOR, COMMUNITY, settings) == ACCOUNT_NEW

    _establish(trust_env)
    assert await service.account_class(AUTHOR, COMMUNITY, settings) == ACCOUNT_ESTABLISHED

    _trust(trust_env)
    assert await service.account_class(AUTHOR, COMMUNITY, settings) == ACCOUNT_TRUSTED


@pytest.mark.asyncio
async def test_spam_label_overrides_trust(trust_env) -> None:
    _trust(trust_env)
    trust_env.spam_labels.labeled.add(AUTHOR)
    service = container.get_anti_spam()
    assert await service.is_account_trusted(AUTHOR, COMMUNITY, 10) is False
    assert await service.is_new_account(AUTHOR, COMMUNITY, 7) is True


@pytest.mark.asyncio
async def test_low_trust_score_revokes_trusted_status(trust_env) -> None:
    _trust(trust_env)
    await trust_env.trust_repo.replace_scores("", {AUTHOR: 0.01}, computed_at=datetime.now(timezone.utc))
    assert await container.get_anti_spam().is_account_trusted(AUTHOR, COMMUNITY, 10) is False


@pytest.mark.asyncio
async def test_low_trust_pds_marks_account_new(trust_env) -> None:
    _establish(trust_env)
    trust_env.accounts.accounts[AUTHOR].pds_host = "sketchy.example"
    await container.get_pds_table().upsert_override("sketchy.example", 0.1)
    assert await container.get_anti_spam().is_new_account(AUTHOR, COMMUNITY, 7) is True


@pytest.mark.asyncio
async def test_new_account_write_budget(trust_env) -> None:
    service = container.get_anti_spam()
    settings = AntiSpamSettings()
    results = [
        await service.check_write_rate_limit(AUTHOR, COMMUNITY, True, settings, now=1000.0)
        for _ in range(settings.new_account_write_rate_per_min + 1)
    ]
    assert results == [False, False, False, True]
    # next window starts with a fresh budget
    assert await service.check_write_rate_limit(AUTHOR, COMMUNITY, True, settings, now=1060.0) is False


@pytest.mark.asyncio
async def test_established_account_write_budget(trust_env) -> None:
    service = container.get_anti_spam()
    settings = AntiSpamSettings()
    budget = settings.established_write_rate_per_min
    results = [
        await service.check_write_rate_limit(AUTHOR, COMMUNITY, False, settings, now=1000.0)
        for _ in range(budget + 1)
    ]
    assert results == [False] * budget + [True]
    assert await service.check_write_rate_limit(AUTHOR, COMMUNITY, False, settings, now=1060.0) is False


@pytest.mark.asyncio
async def test_rate_limit_store_outage_fails_closed_by_default(trust_env, failing_counters) -> None:
    service = _service_with(failing_counters, trust_env, fail_open=False)
    assert await service.check_write_rate_limit(AUTHOR, COMMUNITY, True, AntiSpamSettings()) is True


@pytest.mark.asyncio
async def test_rate_limit_store_outage_can_fail_open(trust_env, failing_counters) -> None:
    service = _service_with(failing_counters, trust_env, fail_open=True)
    assert await service.check_write_rate_limit(AUTHOR, COMMUNITY, True, AntiSpamSettings()) is False


@pytest.mark.asyncio
async def test_burst_store_outage_does_not_hold(trust_env, failing_counters) -> None:
    service = _service_with(failing_counters, trust_env, fail_open=False)
    assert await service.check_burst(AUTHOR, COMMUNITY, AntiSpamSettings()) is False


@pytest.mark.asyncio
async def test_burst_detection(trust_env) -> None:
    service = container.get_anti_spam()
    settings = AntiSpamSettings()
    results = [await service.check_burst(AUTHOR, COMMUNITY, settings, now=1000.0) for _ in range(settings.burst_post_count + 1)]
    assert results[-1] is True
    assert not any(results[:-1])


@pytest.mark.asyncio
async def test_new_account_content_is_held_and_queued(trust_env) -> None:
    trust_env.community_settings.rows[COMMUNITY] = {"word_filter": ["casino"]}

    result = await container.get_anti_spam().run_anti_spam_checks(
        _submission("Visit https://spam.example for casino bonuses")
    )

    assert result.held is True
    assert [reason.reason for reason in result.reasons] == ["word_filter", "first_post", "link_hold"]
    assert result.reasons[0].matched_words == ["casino"]
    queued = sorted(entry.queue_reason for entry in trust_env.queue.entries.values())
    assert queued == ["first_post", "link_hold", "word_filter"]


@pytest.mark.asyncio
async def test_trusted_and_privileged_accounts_skip_checks(trust_env) -> None:
    trust_env.community_settings.rows[COMMUNITY] = {"word_filter": ["casino"]}
    service = container.get_anti_spam()

    _trust(trust_env)
    assert (await service.run_anti_spam_checks(_submission("casino"))).held is False

    trust_env.account_trust.records.clear()
    trust_env.accounts.add(Account(did=AUTHOR, role="moderator"))
    assert (await service.run_anti_spam_checks(_submission("casino"))).held is False
    assert trust_env.queue.entries == {}


@pytest.mark.asyncio
async def test_established_account_only_hits_word_filter(trust_env) -> None:
    _establish(trust_env)
    trust_env.community_settings.rows[COMMUNITY] = {"word_filter": "casino, lottery"}

    result = await container.get_anti_spam().run_anti_spam_checks(_submission("lottery at https://x.example"))

    assert [reason.as_dict() for reason in result.reasons] == [{"reason": "word_filter", "matched_words": ["lottery"]}]


@pytest.mark.asyncio
async def test_topic_creation_delay(trust_env) -> None:
    service = container.get_anti_spam()
    assert await service.can_create_topic(AUTHOR, COMMUNITY) is False

    relaxed = AntiSpamSettings(topic_creation_delay_enabled=False)
    assert await service.can_create_topic(AUTHOR, COMMUNITY, relaxed) is True

    trust_env.account_trust.put(AccountTrustRecord(did=AUTHOR, community_did=COMMUNITY, approved_post_count=1))
    assert await service.can_create_topic(AUTHOR, COMMUNITY) is True


@pytest.mark.asyncio
async def test_write_gate_rejects_over_budget(trust_env) -> None:
    gate = container.get_write_gate()
    for _ in range(3):
        decision = await gate.enforce(_submission(uri=None))
        assert decision.account_class == ACCOUNT_NEW
        assert decision.held is True

    with pytest.raises(RateLimitExceeded) as exc:
        await gate.enforce(_submission(uri=None))
    assert exc.value.scope == "write:new"
    assert exc.value.limit == 3


@pytest.mark.asyncio
async def test_write_gate_delays_topics_from_new_accounts(trust_env) -> None:
    with pytest.raises(HTTPException) as exc:
        await container.get_write_gate().enforce(_submission(content_type="topic"))
    assert exc.value.status_code == 403
    assert exc.value.detail == {"code": "topic_creation_delayed"}


@pytest.mark.asyncio
async def test_write_gate_passes_trusted_accounts(trust_env) -> None:
    _trust(trust_env)
    gate = container.get_write_gate()
    for _ in range(20):
        decision = await gate.enforce(_submission(content_type="topic"))
        assert decision.account_class == ACCOUNT_TRUSTED
        assert decision.held is False


@pytest.mark.asyncio
async def test_approval_clears_queue_and_builds_trust(trust_env) -> None:
    trust_env.community_settings.rows[COMMUNITY] = {"trusted_post_threshold": 1}
    await container.get_anti_spam().run_anti_spam_checks(_submission("first post https://x.example"))
    queue = container.get_queue_service()
    page = await queue.list_queue(limit=10)
    assert len(page.items) == 2

    outcome = await queue.review(page.items[0].id, approve=True, reviewer_did="did:plc:moderator")

    assert outcome.removed_entries == 2
    assert outcome.account_trust.approved_post_count == 1
    assert outcome.account_trust.is_trusted is True
    assert trust_env.queue.entries == {}


@pytest.mark.asyncio
async def test_rejection_does_not_count_toward_trust(trust_env) -> None:
    await container.get_anti_spam().run_anti_spam_checks(_submission())
    queue = container.get_queue_service()
    [entry] = (await queue.list_queue(limit=10)).items

    outcome = await queue.review(entry.id, approve=False, reviewer_did="did:plc:moderator")

    assert outcome.account_trust is None
    assert await trust_env.account_trust.get(AUTHOR, COMMUNITY) is None
    with pytest.raises(NotFoundError):
        await queue.review(entry.id, approve=False, reviewer_did="did:plc:moderator")

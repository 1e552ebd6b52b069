from datetime import datetime, timezone

import pytest

from trustguard.trust.domain import container
from trustguard.trust.domain.events import AccountsFiltered
from trustguard.trust.domain.exceptions import NotFoundError
from trustguard.trust.domain.models import Account, FilterStatus
from trustguard.trust.domain.sybil import DetectedCluster, cluster_hash

COMMUNITY = "did:plc:community"
TARGET = "did:plc:target"


async def _link(did_a: str, did_b: str, times: int) -> None:
    recorder = container.get_recorder()
    for _ in range(times):
        await recorder.record_reply(did_a, did_b, COMMUNITY)


@pytest.fixture
def accounts(trust_env):
    for did in (TARGET, "did:plc:a", "did:plc:b", "did:plc:c"):
        trust_env.accounts.add(Account(did=did))
    return trust_env.accounts


@pytest.mark.asyncio
async def test_ban_below_threshold_does_not_propagate(trust_env, accounts) -> None:
    await _link(TARGET, "did:plc:a", 3)

    outcome = await container.get_ban_service().ban_account(TARGET, moderator_did="did:plc:admin", reason="spam")

    assert outcome.account.is_banned is True
    assert outcome.propagation.propagated is False
    assert outcome.propagation.ban_count == 1
    assert trust_env.ban_repo.filters == {}


@pytest.mark.asyncio
async def test_second_linked_ban_filters_remaining_accounts(trust_env, accounts) -> None:
    await _link(TARGET, "did:plc:a", 3)
    await _link("did:plc:b", TARGET, 2)
    await _link(TARGET, "did:plc:b", 1)
    await _link(TARGET, "did:plc:c", 1)
    accounts.accounts["did:plc:a"].is_banned = True

    outcome = await container.get_ban_service().ban_account(TARGET, moderator_did="did:plc:admin")

    # weights in both directions are summed; c stays below the link threshold
    assert outcome.propagation.propagated is True
    assert outcome.propagation.ban_count == 2
    assert outcome.propagation.filtered_dids == ["did:plc:b"]
    assert trust_env.ban_repo.filters[("did:plc:b", "")] == FilterStatus.FILTERED.value
    assert ("did:plc:c", "") not in trust_env.ban_repo.filters
    [event] = trust_env.events.of_type(AccountsFiltered)
    assert event.trigger_did == TARGET


@pytest.mark.asyncio
async def test_cluster_membership_defines_linked_accounts(trust_env, accounts) -> None:
    members = [TARGET, "did:plc:a", "did:plc:c"]
    await trust_env.cluster_repo.apply_detection(
        [
            DetectedCluster(
                cluster_hash=cluster_hash(members),
                member_roles={did: "peripheral" for did in members},
                internal_edge_count=3,
                external_edge_count=0,
                average_trust=0.0,
            )
        ],
        at=datetime.now(timezone.utc),
    )
    accounts.accounts["did:plc:a"].is_banned = True

    outcome = await container.get_ban_service().ban_account(TARGET, moderator_did="did:plc:admin")

    assert outcome.propagation.filtered_dids == ["did:plc:c"]


@pytest.mark.asyncio
async def test_transient_failures_are_retried(trust_env, accounts) -> None:
    await _link(TARGET, "did:plc:a", 3)
    await _link(TARGET, "did:plc:b", 3)
    accounts.accounts["did:plc:a"].is_banned = True
    trust_env.ban_repo.fail_times = trust_env.settings.ban_propagation_retries - 1

    outcome = await container.get_ban_service().ban_account(TARGET, moderator_did="did:plc:admin")

    assert outcome.propagation_error is None
    assert outcome.propagation.filtered_dids == ["did:plc:b"]


@pytest.mark.asyncio
async def test_exhausted_retries_keep_the_ban(trust_env, accounts) -> None:
    await _link(TARGET, "did:plc:a", 3)
    await _link(TARGET, "did:plc:b", 3)
    accounts.accounts["did:plc:a"].is_banned = True
    trust_env.ban_repo.fail_times = trust_env.settings.ban_propagation_retries

    outcome = await container.get_ban_service().ban_account(TARGET, moderator_did="did:plc:admin")

    assert outcome.account.is_banned is True
    assert outcome.propagation is None
    assert outcome.propagation_error == "ban_propagation_failed"
    assert trust_env.ban_repo.filters == {}


@pytest.mark.asyncio
async def test_unknown_accounts_and_clusters(trust_env) -> None:
    service = container.get_ban_service()
    with pytest.raises(NotFoundError):
        await service.ban_account("did:plc:ghost", moderator_did="did:plc:admin")
    with pytest.raises(NotFoundError):
        await service.unban_account("did:plc:ghost", moderator_did="did:plc:admin")
    with pytest.raises(NotFoundError):
        await service.propagate_ban("missing")


@pytest.mark.asyncio
async def test_unban_records_audit_action(trust_env, accounts) -> None:
    accounts.accounts[TARGET].is_banned = True
    account = await container.get_ban_service().unban_account(TARGET, moderator_did="did:plc:admin", reason="appeal")
    assert account.is_banned is False
    assert trust_env.ban_repo.actions[-1]["action"] == "unban"
    assert trust_env.ban_repo.actions[-1]["reason"] == "appeal"

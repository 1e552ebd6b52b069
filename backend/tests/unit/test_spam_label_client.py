import httpx
import pytest

from trustguard.infra.counters import InMemoryCounterStore
from trustguard.trust.infra.spam_label_client import QUERY_LABELS_PATH, LabelerSpamLabels, spam_labeled_dids

LABELER = "did:plc:labeler"


def test_spam_labels_honour_negation_and_sources() -> None:
    labels = [
        {"src": LABELER, "uri": "did:plc:spammer", "val": "spam"},
        {"src": LABELER, "uri": "did:plc:cleared", "val": "spam"},
        {"src": LABELER, "uri": "did:plc:cleared", "val": "spam", "neg": True},
        {"src": "did:plc:other", "uri": "did:plc:stranger", "val": "spam"},
        {"src": LABELER, "uri": "did:plc:artist", "val": "nudity"},
        {"src": LABELER, "uri": "at://did:plc:x/post/1", "val": "spam"},
    ]
    assert spam_labeled_dids(labels, sources=[LABELER]) == {"did:plc:spammer"}
    assert spam_labeled_dids(labels) == {"did:plc:spammer", "did:plc:stranger"}


@pytest.mark.asyncio
async def test_lookup_queries_labeler_and_caches_verdicts() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        assert request.url.path == QUERY_LABELS_PATH
        return httpx.Response(200, json={"labels": [{"src": LABELER, "uri": "did:plc:spammer", "val": "spam"}]})

    counters = InMemoryCounterStore()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        labels = LabelerSpamLabels(http, base_url="https://labeler.example/", sources=[LABELER], counters=counters)
        verdicts = await labels.batch_is_spam_labeled(["did:plc:spammer", "did:plc:member"])
        assert verdicts == {"did:plc:spammer": True, "did:plc:member": False}
        assert await labels.is_spam_labeled("did:plc:spammer") is True

    assert len(calls) == 1
    assert calls[0].url.params.get_list("uriPatterns") == ["did:plc:spammer", "did:plc:member"]
    assert await counters.get("spamlabel:did:plc:member") == "0"


@pytest.mark.asyncio
async def test_labeler_outage_counts_as_not_labeled() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    counters = InMemoryCounterStore()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        labels = LabelerSpamLabels(http, base_url="https://labeler.example", counters=counters)
        assert await labels.is_spam_labeled("did:plc:spammer") is False

    assert await counters.get("spamlabel:did:plc:spammer") is None

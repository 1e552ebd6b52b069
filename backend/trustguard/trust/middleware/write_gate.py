"""Write gate run before a topic or reply is persisted."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, status

from trustguard.infra.rate_limit import RateLimitExceeded
from trustguard.trust.domain.anti_spam import (
    ACCOUNT_NEW,
    ACCOUNT_TRUSTED,
    RATE_WINDOW_SECONDS,
    AntiSpamCheckResult,
    AntiSpamService,
    ContentSubmission,
)


@dataclass(slots=True)
class WriteDecision:
    account_class: str
    result: AntiSpamCheckResult

    @property
    def held(self) -> bool:
        return self.result.held


class WriteGate:
    """Classifies the author, spends the write budget, then runs the content checks."""

    def __init__(self, *, anti_spam: AntiSpamService) -> None:
        self._anti_spam = anti_spam

    async def enforce(self, content: ContentSubmission) -> WriteDecision:
        settings = await self._anti_spam.load_settings(content.community_did)
        account_class = await self._anti_spam.account_class(content.author_did, content.community_did, settings)
        if account_class == ACCOUNT_TRUSTED:
            return WriteDecision(account_class=account_class, result=AntiSpamCheckResult())

        is_new = account_class == ACCOUNT_NEW
        if await self._anti_spam.check_write_rate_limit(content.author_did, content.community_did, is_new, settings):
            raise RateLimitExceeded(
                f"write:{account_class}",
                limit=settings.write_budget(is_new),
                retry_after=RATE_WINDOW_SECONDS,
            )

        if content.content_type == "topic" and not await self._anti_spam.can_create_topic(
            content.author_did, content.community_did, settings
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "topic_creation_delayed"},
            )

        result = await self._anti_spam.run_anti_spam_checks(content, settings)
        return WriteDecision(account_class=account_class, result=result)

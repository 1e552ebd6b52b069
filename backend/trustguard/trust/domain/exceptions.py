"""Exceptions raised by the trust and sybil defense domain."""

from __future__ import annotations


class TrustError(Exception):
    """Base class carrying a machine readable error code."""

    code = "trust_error"

    def __init__(self, code: str | None = None, message: str | None = None) -> None:
        if code:
            self.code = code
        super().__init__(message or self.code)


class NotFoundError(TrustError):
    code = "not_found"


class InvalidInputError(TrustError):
    code = "invalid_input"


class RecomputeCooldownError(TrustError):
    code = "recompute_cooldown"

    def __init__(self, retry_after: int) -> None:
        super().__init__()
        self.retry_after = max(1, int(retry_after))


class TrustComputationError(TrustError):
    code = "trust_computation_failed"


class BanPropagationError(TrustError):
    code = "ban_propagation_failed"


class ConflictError(TrustError):
    code = "conflict"

"""Trust-weighted reputation for accounts caught in sybil clusters."""

from __future__ import annotations

import math


def cluster_diversity_factor(in_flagged_cluster: bool, external_count: int) -> float:
    """1.0 outside flagged clusters, else ``log2(1 + external_count)``.

    A flagged member with no outside contacts contributes nothing.
    """
    if not in_flagged_cluster:
        return 1.0
    return math.log2(1 + max(0, external_count))


def weighted_reputation(base: int, trust_score: float, pds_factor: float, diversity_factor: float) -> int:
    return int(round(base * trust_score * pds_factor * diversity_factor))

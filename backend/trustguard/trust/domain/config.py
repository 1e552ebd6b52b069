"""Immutable configuration values for the trust engine and anti-spam checks."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

_SECTIONS = ("engine", "detector", "ban_propagation", "heuristics", "accounts")


@dataclass(frozen=True)
class TrustSettings:
    """Knobs for propagation, cluster detection and ban cascades."""

    # engine
    damping: float = 0.85
    epsilon: float = 1e-4
    max_iterations: int = 100
    default_trust_score: float = 0.1
    pds_default_trust_factor: float = 0.3
    # detector
    low_trust_cutoff: float = 0.05
    min_cluster_size: int = 3
    ratio_threshold: float = 0.8
    # ban propagation
    ban_propagation_threshold: int = 2
    ban_link_min_weight: int = 3
    ban_propagation_retries: int = 3
    # heuristics
    burst_reaction_threshold: int = 20
    burst_window_minutes: int = 10
    similarity_threshold: float = 0.8
    similarity_min_posts: int = 3
    similarity_window_hours: int = 24
    low_diversity_min_interactions: int = 10
    low_diversity_min_targets: int = 3
    # account classification
    untrusted_score_cutoff: float = 0.05
    pds_new_account_cutoff: float = 0.2

    def __post_init__(self) -> None:
        if not 0.0 < self.damping <= 1.0:
            raise ValueError("damping must be in (0, 1]")
        if self.epsilon <= 0:
            raise ValueError("epsilon must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        for name in ("default_trust_score", "pds_default_trust_factor", "low_trust_cutoff", "ratio_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        if self.min_cluster_size < 2:
            raise ValueError("min_cluster_size must be >= 2")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TrustSettings":
        flat: dict[str, Any] = {}
        for key, value in data.items():
            if key in _SECTIONS and isinstance(value, Mapping):
                flat.update(value)
            else:
                flat[key] = value
        return cls(**_coerce_fields(cls, flat))


@dataclass(frozen=True)
class AntiSpamSettings:
    """Per-community moderation thresholds threaded through a single write."""

    word_filter: tuple[str, ...] = ()
    first_post_queue_count: int = 3
    new_account_days: int = 7
    new_account_write_rate_per_min: int = 3
    established_write_rate_per_min: int = 10
    link_hold_enabled: bool = True
    topic_creation_delay_enabled: bool = True
    burst_post_count: int = 5
    burst_window_minutes: int = 10
    trusted_post_threshold: int = 10

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AntiSpamSettings":
        return cls(**_coerce_fields(cls, data))

    def as_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["word_filter"] = list(self.word_filter)
        return payload

    def write_budget(self, is_new_account: bool) -> int:
        if is_new_account:
            return self.new_account_write_rate_per_min
        return self.established_write_rate_per_min


def _coerce_fields(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for entry in dataclasses.fields(cls):
        if entry.name not in data or data[entry.name] is None:
            continue
        raw = data[entry.name]
        default = entry.default
        try:
            if isinstance(default, bool):
                values[entry.name] = raw if isinstance(raw, bool) else str(raw).strip().lower() in {"1", "true", "yes", "on"}
            elif isinstance(default, int):
                values[entry.name] = int(raw)
            elif isinstance(default, float):
                values[entry.name] = float(raw)
            elif isinstance(default, tuple):
                items = raw if isinstance(raw, (list, tuple, set)) else str(raw).split(",")
                values[entry.name] = tuple(str(item).strip() for item in items if str(item).strip())
            else:
                values[entry.name] = raw
        except (TypeError, ValueError):
            logger.warning("ignoring malformed setting", extra={"setting": entry.name})
    return values


def load_trust_settings(path: str | Path | None) -> TrustSettings:
    """Load trust settings from YAML, falling back to defaults."""

    if not path:
        return TrustSettings()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        logger.warning("trust config file missing at %s; using defaults", path)
        return TrustSettings()
    except yaml.YAMLError as exc:
        logger.warning("failed to parse trust config YAML: %s", exc)
        return TrustSettings()
    if not isinstance(loaded, dict):
        logger.warning("trust config file invalid; falling back to defaults")
        return TrustSettings()
    try:
        return TrustSettings.from_mapping(loaded)
    except ValueError as exc:
        logger.warning("trust config rejected (%s); falling back to defaults", exc)
        return TrustSettings()

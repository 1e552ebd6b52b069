"""Central registry for Prometheus metrics used across the service."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"trustguard_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"trustguard_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

TRUST_RECOMPUTE = Counter(
	"trustguard_trust_recompute_total",
	"Trust graph recomputations by outcome",
	["result"],
)

TRUST_RECOMPUTE_SECONDS = Histogram(
	"trustguard_trust_recompute_seconds",
	"Wall time of a full trust graph recomputation",
	buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)

SYBIL_CLUSTERS_FLAGGED = Counter(
	"trustguard_sybil_clusters_flagged_total",
	"Sybil clusters written by detection runs",
)

RATE_LIMITED = Counter(
	"trustguard_rate_limited_total",
	"Writes rejected by the anti-spam rate limiter",
	["account_class"],
)

CONTENT_HELD = Counter(
	"trustguard_content_held_total",
	"Content held for moderation by reason",
	["reason"],
)

BAN_PROPAGATION = Counter(
	"trustguard_ban_propagation_total",
	"Ban propagation attempts",
	["mode", "result"],
)

COUNTER_STORE_ERRORS = Counter(
	"trustguard_counter_store_errors_total",
	"Counter store failures by operation",
	["operation"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def trust_recompute(result: str, elapsed_seconds: float | None = None) -> None:
	TRUST_RECOMPUTE.labels(result=result).inc()
	if elapsed_seconds is not None:
		TRUST_RECOMPUTE_SECONDS.observe(elapsed_seconds)


def clusters_flagged(count: int) -> None:
	if count > 0:
		SYBIL_CLUSTERS_FLAGGED.inc(count)


def rate_limited(account_class: str) -> None:
	RATE_LIMITED.labels(account_class=account_class).inc()


def content_held(reason: str) -> None:
	CONTENT_HELD.labels(reason=reason).inc()


def ban_propagation(mode: str, result: str) -> None:
	BAN_PROPAGATION.labels(mode=mode, result=result).inc()


def counter_store_error(operation: str) -> None:
	COUNTER_STORE_ERRORS.labels(operation=operation).inc()

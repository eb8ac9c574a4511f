"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"guildhall_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"guildhall_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

GUILDS_CREATED = Counter(
	"guildhall_guilds_created_total",
	"Guilds created",
)

GUILDS_DELETED = Counter(
	"guildhall_guilds_deleted_total",
	"Guilds deleted together with their memberships",
)

MEMBERSHIP_TRANSITIONS = Counter(
	"guildhall_membership_transitions_total",
	"Membership lifecycle events by outcome",
	["event", "result"],
)

REPOSITORY_UNAVAILABLE = Counter(
	"guildhall_repository_unavailable_total",
	"Repository calls that timed out or failed at the connection level",
	["operation"],
)

REPOSITORY_LATENCY = Histogram(
	"guildhall_repository_call_duration_seconds",
	"Guild repository call latency in seconds",
	["operation"],
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0),
)

IDEMPOTENCY_LOOKUPS = Counter(
	"guildhall_idempotency_lookups_total",
	"Idempotency key lookups by outcome",
	["result"],
)

REDIS_UP = Gauge("guildhall_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("guildhall_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("guildhall_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("guildhall_postgres_latency_seconds", "Postgres ping latency (seconds)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_guilds_created() -> None:
	GUILDS_CREATED.inc()


def inc_guilds_deleted() -> None:
	GUILDS_DELETED.inc()


def record_transition(event: str, result: str) -> None:
	MEMBERSHIP_TRANSITIONS.labels(event=event, result=result).inc()


def record_repository_unavailable(operation: str) -> None:
	REPOSITORY_UNAVAILABLE.labels(operation=operation).inc()


def observe_repository_call(operation: str, elapsed_seconds: float) -> None:
	REPOSITORY_LATENCY.labels(operation=operation).observe(elapsed_seconds)


def record_idempotency(result: str) -> None:
	IDEMPOTENCY_LOOKUPS.labels(result=result).inc()


def mark_redis(up: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if up else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(up: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if up else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)

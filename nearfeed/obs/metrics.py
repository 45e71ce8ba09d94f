"""Central registry for Prometheus metrics used across the feed engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Summary

FEED_PAGES = Counter(
	"nearfeed_feed_pages_total",
	"Feed pages fetched from the document store",
	["kind"],
)

FEED_PAGE_DROPPED = Summary(
	"nearfeed_feed_page_dropped",
	"Candidates dropped by the distance filter per fetched page",
)

REALTIME_PUSHES = Counter(
	"nearfeed_realtime_pushes_total",
	"Realtime snapshot pushes handled",
	["result"],
)

REALTIME_SUBSCRIPTIONS = Counter(
	"nearfeed_realtime_subscriptions_total",
	"Store subscriptions opened or closed",
	["action"],
)

VOTE_LOOKUPS = Counter(
	"nearfeed_vote_lookups_total",
	"Per-post vote state lookups issued while enriching feeds",
)

OPTIMISTIC_MUTATIONS = Counter(
	"nearfeed_optimistic_mutations_total",
	"Optimistic cache mutations by kind and outcome",
	["kind", "result"],
)

STORE_BATCH_LATENCY = Histogram(
	"nearfeed_store_batch_duration_seconds",
	"Document store batch commit latency in seconds",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0),
)

STORE_BATCH_CONFLICTS = Counter(
	"nearfeed_store_batch_conflicts_total",
	"Batch commits retried because a watched collection changed",
)

OFFLINE_SYNC = Counter(
	"nearfeed_offline_sync_total",
	"Offline queue entries processed by drain",
	["result"],
)

OFFLINE_PURGED = Counter(
	"nearfeed_offline_purged_total",
	"Synced offline entries removed after the retention window",
)

POLLER_CHECKS = Counter(
	"nearfeed_poller_checks_total",
	"Distance throttled poll checks",
	["result"],
)


def feed_page(kind: str, dropped: int) -> None:
	FEED_PAGES.labels(kind=kind).inc()
	FEED_PAGE_DROPPED.observe(dropped)


def realtime_push(result: str) -> None:
	REALTIME_PUSHES.labels(result=result).inc()


def realtime_subscription(action: str) -> None:
	REALTIME_SUBSCRIPTIONS.labels(action=action).inc()


def inc_vote_lookup() -> None:
	VOTE_LOOKUPS.inc()


def optimistic(kind: str, result: str) -> None:
	OPTIMISTIC_MUTATIONS.labels(kind=kind, result=result).inc()


def observe_batch(elapsed_seconds: float) -> None:
	STORE_BATCH_LATENCY.observe(elapsed_seconds)


def inc_batch_conflict() -> None:
	STORE_BATCH_CONFLICTS.inc()


def offline_sync(result: str, count: int = 1) -> None:
	if count:
		OFFLINE_SYNC.labels(result=result).inc(count)


def offline_purged(count: int) -> None:
	if count:
		OFFLINE_PURGED.inc(count)


def poller_check(result: str) -> None:
	POLLER_CHECKS.labels(result=result).inc()

"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from typing import Iterable

from prometheus_client import Counter, Gauge, Histogram


ADMISSION_DECISIONS_TOTAL = Counter(
	"pixguard_admission_decisions_total",
	"Upload admission decisions by outcome",
	["outcome"],
)

ADMISSION_LEASES_ACTIVE = Gauge(
	"pixguard_admission_leases_active",
	"Concurrency leases currently held by upload clients",
)

UPLOADS_TOTAL = Counter(
	"pixguard_uploads_total",
	"Public uploads processed by result",
	["result"],
)

SCAN_JOBS_TOTAL = Counter(
	"pixguard_scan_jobs_total",
	"Moderation tasks processed",
	["status"],
)

SCAN_FAILURES_TOTAL = Counter(
	"pixguard_scan_failures_total",
	"Moderation task failures by reason",
	["reason"],
)

SCAN_LATENCY_SECONDS = Histogram(
	"pixguard_scan_latency_seconds",
	"Moderation task latency in seconds",
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

SCAN_FLAGGED_TOTAL = Counter(
	"pixguard_scan_flagged_total",
	"Images flagged by the screening provider",
	["provider"],
)

QUEUE_BACKOFFS_TOTAL = Counter(
	"pixguard_queue_backoffs_total",
	"Times the moderation queue paused polling after a provider outage",
)

QUEUE_ESCALATIONS_TOTAL = Counter(
	"pixguard_queue_escalations_total",
	"Moderation tasks escalated to the terminal error status",
)

QUEUE_BACKLOG_GAUGE = Gauge(
	"pixguard_queue_backlog",
	"Moderation tasks segmented by status",
	["status"],
)

SIDE_EFFECT_FAILURES_TOTAL = Counter(
	"pixguard_side_effect_failures_total",
	"Best-effort side effects that failed",
	["kind"],
)

HTTP_REQUESTS_TOTAL = Counter(
	"pixguard_http_requests_total",
	"HTTP requests by route, method and status",
	["route", "method", "status"],
)

HTTP_REQUEST_LATENCY_SECONDS = Histogram(
	"pixguard_http_request_latency_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
)


def observe_request(route: str, method: str, status_code: int, duration_seconds: float) -> None:
	HTTP_REQUESTS_TOTAL.labels(route=route, method=method, status=str(status_code)).inc()
	HTTP_REQUEST_LATENCY_SECONDS.labels(route=route, method=method).observe(max(duration_seconds, 0.0))


def observe_backlog(counts: Iterable[tuple[str, int]]) -> None:
	for status, value in counts:
		QUEUE_BACKLOG_GAUGE.labels(status=status).set(value)

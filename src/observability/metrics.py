"""Prometheus metric definitions for resilience-layer self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

PROBE_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0)
ASK_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0)

# ---------------------------------------------------------------------------
# Health monitor metrics
# ---------------------------------------------------------------------------

DEGRADATION_MODE = Gauge(
    "resilience_degradation_mode",
    "Current degradation mode of the AI dependency (1 for the active mode, 0 otherwise)",
    labelnames=["mode"],
)

DEPENDENCY_HEALTHY = Gauge(
    "resilience_dependency_healthy",
    "Whether the AI dependency passed its last probe (1=healthy, 0=unhealthy)",
)

HEALTH_PROBES_TOTAL = Counter(
    "resilience_health_probes_total",
    "Total number of health probes by result",
    labelnames=["result"],
)

HEALTH_PROBE_DURATION = Histogram(
    "resilience_health_probe_duration_seconds",
    "Round-trip time of health probes in seconds",
    buckets=PROBE_DURATION_BUCKETS,
)

CONSECUTIVE_ERRORS = Gauge(
    "resilience_consecutive_errors",
    "Current streak of failed or slow health probes",
)

# ---------------------------------------------------------------------------
# Security shield metrics
# ---------------------------------------------------------------------------

API_CALLS_RECORDED = Counter(
    "resilience_api_calls_recorded_total",
    "Total number of outbound AI calls accounted by the security shield",
)

CALLS_IN_WINDOW = Gauge(
    "resilience_calls_in_window",
    "Number of AI calls in the trailing one-minute usage window",
)

SECURITY_EVENTS_TOTAL = Counter(
    "resilience_security_events_total",
    "Total number of security events emitted",
    labelnames=["kind", "severity"],
)

SESSION_ROTATIONS_TOTAL = Counter(
    "resilience_session_rotations_total",
    "Total number of session credential rotations",
    labelnames=["reason"],
)

# ---------------------------------------------------------------------------
# Event log / persistence metrics
# ---------------------------------------------------------------------------

RESILIENCE_EVENTS_TOTAL = Counter(
    "resilience_events_total",
    "Total number of resilience events appended to the event log",
    labelnames=["category", "outcome"],
)

PERSISTENCE_ERRORS_TOTAL = Counter(
    "resilience_persistence_errors_total",
    "Total number of suppressed state store read/write failures",
    labelnames=["key", "operation"],
)

# ---------------------------------------------------------------------------
# Personalization metrics
# ---------------------------------------------------------------------------

INSIGHTS_TOTAL = Counter(
    "resilience_insights_total",
    "Total number of personalized insights emitted",
    labelnames=["type"],
)

# ---------------------------------------------------------------------------
# Request / info metrics
# ---------------------------------------------------------------------------

ASK_REQUESTS_TOTAL = Counter(
    "resilience_ask_requests_total",
    "Total number of prompts routed through the resilience layer",
    labelnames=["route"],
)

ASK_DURATION = Histogram(
    "resilience_ask_duration_seconds",
    "End-to-end duration of routed prompts in seconds",
    buckets=ASK_DURATION_BUCKETS,
)

APP_INFO = Info(
    "resilience",
    "Resilience layer build information",
)

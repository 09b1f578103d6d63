"""Security shield: call accounting, abuse/bot detection and session-key rotation.

The shield monitors; it never rejects a call.  ``record_call()`` must be invoked
for every outbound AI request (the Gemini client does this itself).  A periodic
check inspects the trailing minute of calls:

- more than ``max_requests_per_minute`` calls raises a High ``api_spike`` event,
  which rotates the session key immediately;
- suspiciously regular call spacing (inter-call variance below a threshold)
  raises a Medium ``unusual_activity`` event.

Each detector fires once per episode and re-arms after a check sees the
condition clear.  The session key is an opaque nonce for bookkeeping only.
"""

import logging
import secrets
import threading
from dataclasses import dataclass
from uuid import uuid4

from pydantic import TypeAdapter

from src.observability.metrics import (
    API_CALLS_RECORDED,
    CALLS_IN_WINDOW,
    SECURITY_EVENTS_TOTAL,
    SESSION_ROTATIONS_TOTAL,
)
from src.resilience.event_log import EventLog
from src.resilience.models import (
    EventCategory,
    Outcome,
    RiskLevel,
    SecurityEvent,
    SecurityEventKind,
    SecurityStatus,
    SessionCredential,
    Severity,
)
from src.resilience.scheduling import Clock, Scheduler, SystemClock
from src.resilience.store import (
    SECURITY_EVENTS_KEY,
    SESSION_CREDENTIAL_KEY,
    StateStore,
    load_state,
    save_state,
)
from src.resilience.usage import UsageWindow

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "security_check"
ROTATION_JOB_ID = "session_rotation"

SESSION_KEY_PREFIX = "sk-"
HOUR_MS = 3_600_000
DAY_MS = 86_400_000
RECENT_EVENTS_LIMIT = 10

_EVENTS_ADAPTER = TypeAdapter(list[SecurityEvent])
_CREDENTIAL_ADAPTER = TypeAdapter(SessionCredential)


@dataclass(frozen=True)
class ShieldConfig:
    max_requests_per_minute: int = 60
    check_interval_seconds: float = 10.0
    rotation_interval_seconds: float = 15 * 60.0
    bot_min_samples: int = 5
    bot_variance_threshold_ms2: float = 1000.0
    max_events: int = 50


def is_bot_like(timestamps: list[int], *, min_samples: int = 5, variance_threshold: float = 1000.0) -> bool:
    """Return True if call spacing is too regular to be human-paced.

    Needs at least ``min_samples`` calls; fewer is never anomalous.  Computes the
    population variance of consecutive intervals (ms²).
    """
    if len(timestamps) < min_samples:
        return False
    ordered = sorted(timestamps)
    intervals = [b - a for a, b in zip(ordered, ordered[1:], strict=False)]
    mean = sum(intervals) / len(intervals)
    variance = sum((i - mean) ** 2 for i in intervals) / len(intervals)
    return variance < variance_threshold


class SecurityShield:
    def __init__(
        self,
        store: StateStore,
        event_log: EventLog,
        *,
        scheduler: Scheduler,
        config: ShieldConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or ShieldConfig()
        self._store = store
        self._event_log = event_log
        self._scheduler = scheduler
        self._clock = clock or SystemClock()
        self._window = UsageWindow()
        self._events: list[SecurityEvent] = []
        self._lock = threading.RLock()
        self._running = False
        self._spike_active = False
        self._pattern_active = False
        self._credential = self._generate_credential(None)
        self._load()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.add_interval_job(CHECK_JOB_ID, self.check_usage, self.config.check_interval_seconds)
        self._scheduler.add_interval_job(
            ROTATION_JOB_ID, self._scheduled_rotation, self.config.rotation_interval_seconds
        )
        self._running = True
        logger.info(
            "Security shield started (check every %ss, rotate every %ss)",
            self.config.check_interval_seconds,
            self.config.rotation_interval_seconds,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._scheduler.remove_job(CHECK_JOB_ID)
        self._scheduler.remove_job(ROTATION_JOB_ID)
        self._running = False
        logger.info("Security shield stopped")

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def record_call(self) -> None:
        """Account one outbound AI call. Never blocks, never rejects."""
        now = self._clock.now_ms()
        self._window.record(now)
        with self._lock:
            self._credential = self._credential.model_copy(
                update={"last_used_at": now, "usage_count": self._credential.usage_count + 1}
            )
        API_CALLS_RECORDED.inc()

    def recent_calls(self) -> list[int]:
        """Timestamps of calls in the trailing minute, oldest first."""
        return self._window.snapshot(self._clock.now_ms())

    def is_throttled(self) -> bool:
        """Soft rate limit: True while the trailing minute exceeds the allowed volume.

        Advisory only; callers may choose a local fallback while throttled.
        """
        return self._window.count(self._clock.now_ms()) > self.config.max_requests_per_minute

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def check_usage(self) -> None:
        """Inspect the trailing minute for volume spikes and bot-like cadence."""
        calls = self._window.snapshot(self._clock.now_ms())
        count = len(calls)
        CALLS_IN_WINDOW.set(count)

        limit = self.config.max_requests_per_minute
        if count > limit:
            if not self._spike_active:
                self._spike_active = True
                self._emit(
                    SecurityEventKind.API_SPIKE,
                    Severity.HIGH,
                    f"Detected {count} API calls in the last minute (threshold: {limit})",
                    "Applied rate limiting and rotated session key",
                )
        else:
            self._spike_active = False

        suspicious = is_bot_like(
            calls,
            min_samples=self.config.bot_min_samples,
            variance_threshold=self.config.bot_variance_threshold_ms2,
        )
        if suspicious:
            if not self._pattern_active:
                self._pattern_active = True
                self._emit(
                    SecurityEventKind.UNUSUAL_ACTIVITY,
                    Severity.MEDIUM,
                    f"Unusual API usage pattern detected ({count} evenly spaced calls)",
                    "Enhanced monitoring activated",
                )
        else:
            self._pattern_active = False

    def report_threat(self, detail: str) -> SecurityEvent:
        """Record a critical threat raised by an external detector; rotates the key."""
        return self._emit(
            SecurityEventKind.THREAT_DETECTED,
            Severity.CRITICAL,
            detail,
            "Session key rotated and threat recorded",
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate_credential(self, reason: str = "manual") -> SessionCredential:
        """Replace the live session key with a fresh one. The old value is discarded."""
        with self._lock:
            old = self._credential
            new = self._generate_credential(old)
            self._credential = new
        SESSION_ROTATIONS_TOTAL.labels(reason=reason).inc()
        _ = self._emit(
            SecurityEventKind.SESSION_ROTATION,
            Severity.LOW,
            f"Session key rotated from {old.value[:8]}... to {new.value[:8]}...",
            "Session key successfully rotated",
        )
        return new

    def _scheduled_rotation(self) -> None:
        _ = self.rotate_credential(reason="scheduled")

    def _generate_credential(self, previous: SessionCredential | None) -> SessionCredential:
        now = self._clock.now_ms()
        created_at = now if previous is None else max(now, previous.created_at + 1)
        value = SESSION_KEY_PREFIX + secrets.token_hex(32)
        while previous is not None and value == previous.value:
            value = SESSION_KEY_PREFIX + secrets.token_hex(32)
        return SessionCredential(value=value, created_at=created_at, last_used_at=created_at, usage_count=0)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def credential(self) -> SessionCredential:
        with self._lock:
            return self._credential

    def get_current_session_key(self) -> str:
        return self.credential.value

    def get_status(self) -> SecurityStatus:
        now = self._clock.now_ms()
        with self._lock:
            recent = [e for e in self._events if now - e.timestamp < HOUR_MS]
            last_rotation = self._credential.created_at

        if any(e.severity == Severity.CRITICAL for e in recent):
            risk = RiskLevel.HIGH
        elif any(e.severity == Severity.HIGH for e in recent):
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.LOW

        return SecurityStatus(
            is_secure=risk != RiskLevel.HIGH,
            threats_detected=len(recent),
            last_rotation=last_rotation,
            current_risk=risk,
        )

    def get_recent_events(self) -> list[SecurityEvent]:
        """Events from the last 24 hours, newest first, at most 10."""
        now = self._clock.now_ms()
        with self._lock:
            recent = [e for e in reversed(self._events) if now - e.timestamp < DAY_MS]
        recent.sort(key=lambda e: e.timestamp, reverse=True)
        return recent[:RECENT_EVENTS_LIMIT]

    def all_events(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, kind: SecurityEventKind, severity: Severity, detail: str, auto_response: str) -> SecurityEvent:
        event = SecurityEvent(
            id=uuid4().hex,
            kind=kind,
            severity=severity,
            timestamp=self._clock.now_ms(),
            detail=detail,
            auto_response=auto_response,
        )
        with self._lock:
            self._events = [*self._events, event][-self.config.max_events :]

        SECURITY_EVENTS_TOTAL.labels(kind=kind.value, severity=severity.value).inc()
        if severity in (Severity.LOW, Severity.MEDIUM):
            logger.info("Security event %s (%s): %s", kind.value, severity.value, detail)
        else:
            logger.warning("Security event %s (%s): %s", kind.value, severity.value, detail)

        outcome = Outcome.SUCCESS if kind == SecurityEventKind.SESSION_ROTATION else Outcome.FAIL
        _ = self._event_log.append(EventCategory.SECURITY, f"{kind.value}: {detail}", outcome, auto_response)

        if severity in (Severity.HIGH, Severity.CRITICAL):
            _ = self.rotate_credential(reason=kind.value)

        self._save()
        return event

    def _load(self) -> None:
        events = load_state(self._store, SECURITY_EVENTS_KEY, _EVENTS_ADAPTER)
        if events is not None:
            self._events = events[-self.config.max_events :]
        credential = load_state(self._store, SESSION_CREDENTIAL_KEY, _CREDENTIAL_ADAPTER)
        if credential is not None:
            self._credential = credential

    def _save(self) -> None:
        with self._lock:
            events = list(self._events)
            credential = self._credential
        _ = save_state(self._store, SECURITY_EVENTS_KEY, _EVENTS_ADAPTER, events)
        _ = save_state(self._store, SESSION_CREDENTIAL_KEY, _CREDENTIAL_ADAPTER, credential)

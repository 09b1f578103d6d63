"""Health monitor for the AI dependency: periodic probes driving a degradation mode.

Modes:
- ``normal``: the real dependency is used.
- ``lite``: entered after ``max_errors`` consecutive failed or slow probes.
  Left only through ``reset_errors()`` unless ``auto_recover_after`` is set.
- ``offline``: the dependency is not configured; it is never probed.

Probes run on a scheduler interval plus once immediately on ``start()``.
Each probe is bounded by a timeout no larger than the latency ceiling, so a
hung dependency counts as a failure instead of stalling the monitor.

``SLOW_RESPONSE`` is rare in production: with the default timeout equal to the
ceiling, a probe slower than the ceiling is cancelled and logged as an
``API_ERROR`` timeout.  A slow response is only recorded when the probe
returns within the timeout but the monitor's clock measures it above the
ceiling.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.observability.metrics import (
    CONSECUTIVE_ERRORS,
    DEGRADATION_MODE,
    DEPENDENCY_HEALTHY,
    HEALTH_PROBE_DURATION,
    HEALTH_PROBES_TOTAL,
)
from src.resilience.event_log import EventLog
from src.resilience.models import DegradationMode, EventCategory, HealthStatus, Outcome, ProbeResult
from src.resilience.scheduling import Clock, Scheduler, SystemClock

logger = logging.getLogger(__name__)

HEALTH_JOB_ID = "health_check"
PROBE_PROMPT = "Ping"

ProbeFunc = Callable[[str], Awaitable[ProbeResult]]


@dataclass(frozen=True)
class HealthConfig:
    check_interval_seconds: float = 5 * 60.0
    max_errors: int = 3
    max_response_time_ms: int = 5000
    probe_timeout_seconds: float | None = None  # None = the latency ceiling
    auto_recover_after: int = 0  # consecutive healthy probes that leave lite mode; 0 = never

    def __post_init__(self) -> None:
        ceiling = self.max_response_time_ms / 1000
        if self.probe_timeout_seconds is not None and self.probe_timeout_seconds > ceiling:
            msg = f"probe_timeout_seconds ({self.probe_timeout_seconds}) must not exceed the latency ceiling ({ceiling}s)"
            raise ValueError(msg)

    @property
    def timeout_seconds(self) -> float:
        if self.probe_timeout_seconds is None:
            return self.max_response_time_ms / 1000
        return self.probe_timeout_seconds


class HealthMonitor:
    def __init__(
        self,
        probe: ProbeFunc,
        is_configured: Callable[[], bool],
        event_log: EventLog,
        *,
        scheduler: Scheduler,
        config: HealthConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or HealthConfig()
        self._probe = probe
        self._is_configured = is_configured
        self._event_log = event_log
        self._scheduler = scheduler
        self._clock = clock or SystemClock()
        self._status = HealthStatus(last_check_at=self._clock.now_ms())
        self._healthy_streak = 0
        self._running = False
        self._lock = threading.Lock()
        self._publish(self._status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Begin periodic probing. A no-op if already running."""
        if self._running:
            return
        self._running = True
        self._check_configuration()
        self._scheduler.add_interval_job(HEALTH_JOB_ID, self.check, self.config.check_interval_seconds, run_now=True)
        logger.info("Health monitor started (every %ss)", self.config.check_interval_seconds)

    def stop(self) -> None:
        """Cancel periodic probing. A no-op if already stopped."""
        if not self._running:
            return
        self._scheduler.remove_job(HEALTH_JOB_ID)
        self._running = False
        logger.info("Health monitor stopped")

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def check(self) -> HealthStatus:
        """Run one health check and return the resulting status snapshot. Never raises."""
        if not self._check_configuration():
            return self.get_status()

        started = self._clock.now_ms()
        wall_start = time.monotonic()
        error: str | None = None
        try:
            result = await asyncio.wait_for(self._probe(PROBE_PROMPT), timeout=self.config.timeout_seconds)
            if not result.ok:
                error = result.error
        except TimeoutError:
            error = f"Probe timed out after {self.config.timeout_seconds}s"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        HEALTH_PROBE_DURATION.observe(time.monotonic() - wall_start)
        response_time = max(self._clock.now_ms() - started, 0)

        if error is not None:
            HEALTH_PROBES_TOTAL.labels(result="error").inc()
            self._handle_failure(EventCategory.API_ERROR, error, response_time=0)
        elif response_time > self.config.max_response_time_ms:
            HEALTH_PROBES_TOTAL.labels(result="slow").inc()
            self._handle_failure(
                EventCategory.SLOW_RESPONSE, f"Response time: {response_time}ms", response_time=response_time
            )
        else:
            HEALTH_PROBES_TOTAL.labels(result="success").inc()
            self._handle_success(response_time)
        return self.get_status()

    def _check_configuration(self) -> bool:
        try:
            configured = self._is_configured()
        except Exception:
            logger.exception("Dependency configuration check failed; treating as offline")
            configured = False
        if configured:
            return True
        with self._lock:
            entering = self._status.mode != DegradationMode.OFFLINE
            self._replace(
                is_healthy=False, last_check_at=self._clock.now_ms(), last_response_time_ms=0, mode=DegradationMode.OFFLINE
            )
        HEALTH_PROBES_TOTAL.labels(result="skipped").inc()
        if entering:
            _ = self._event_log.append(
                EventCategory.DEPENDENCY_OFFLINE,
                "AI dependency not configured - running offline",
                Outcome.FAIL,
            )
        return False

    def _handle_success(self, response_time: int) -> None:
        recovered = False
        with self._lock:
            self._healthy_streak += 1
            mode = self._status.mode
            if mode == DegradationMode.LITE:
                threshold = self.config.auto_recover_after
                if threshold and self._healthy_streak >= threshold:
                    mode = DegradationMode.NORMAL
                    recovered = True
            else:
                mode = DegradationMode.NORMAL
            self._replace(
                is_healthy=True,
                last_check_at=self._clock.now_ms(),
                last_response_time_ms=response_time,
                consecutive_error_count=0,
                mode=mode,
            )
        _ = self._event_log.append(
            EventCategory.HEALTH_CHECK, "API health check passed", Outcome.SUCCESS, f"Response time: {response_time}ms"
        )
        if recovered:
            _ = self._event_log.append(
                EventCategory.MODE_RECOVERY,
                "Recovered from Lite Mode after sustained healthy probes",
                Outcome.SUCCESS,
            )

    def _handle_failure(self, category: EventCategory, detail: str, *, response_time: int) -> None:
        switch = False
        with self._lock:
            self._healthy_streak = 0
            errors = self._status.consecutive_error_count + 1
            mode = self._status.mode
            if mode == DegradationMode.OFFLINE:
                mode = DegradationMode.NORMAL
            if errors >= self.config.max_errors and mode != DegradationMode.LITE:
                switch = True
            self._replace(
                is_healthy=False,
                last_check_at=self._clock.now_ms(),
                last_response_time_ms=response_time,
                consecutive_error_count=errors,
                mode=mode,
            )

        if switch:
            self.switch_to_lite_mode()
            reason = "slow responses" if category == EventCategory.SLOW_RESPONSE else "API errors"
            _ = self._event_log.append(category, f"Switching to Lite Mode due to {reason}", Outcome.SUCCESS, detail)
        elif category == EventCategory.SLOW_RESPONSE:
            _ = self._event_log.append(category, "Detected slow API response", Outcome.FAIL, detail)
        else:
            _ = self._event_log.append(category, "API error detected", Outcome.FAIL, detail)

    # ------------------------------------------------------------------
    # Mode transitions
    # ------------------------------------------------------------------

    def switch_to_lite_mode(self) -> None:
        with self._lock:
            self._replace(mode=DegradationMode.LITE, consecutive_error_count=0)
        logger.warning("AI dependency degraded; switched to lite mode")
        _ = self._event_log.append(EventCategory.MODE_SWITCH, "Switched to Local Lite Mode", Outcome.SUCCESS)

    def reset_errors(self) -> HealthStatus:
        """Clear the error streak; leaves lite mode if active. Returns the new snapshot."""
        with self._lock:
            recovering = self._status.mode == DegradationMode.LITE
            update: dict[str, object] = {"consecutive_error_count": 0}
            if recovering:
                update["mode"] = DegradationMode.NORMAL
            self._replace(**update)
            snapshot = self._status
        if recovering:
            logger.info("Recovered from lite mode")
            _ = self._event_log.append(EventCategory.MODE_RECOVERY, "Recovered from Lite Mode", Outcome.SUCCESS)
        return snapshot

    def log_configuration_status(self) -> bool:
        """Record whether the AI dependency is configured. Returns the configuration state."""
        try:
            configured = self._is_configured()
        except Exception as exc:
            _ = self._event_log.append(
                EventCategory.API_KEY_MISSING, "Failed to check API key status", Outcome.FAIL, exc
            )
            return False
        if configured:
            _ = self._event_log.append(
                EventCategory.API_KEY_CONFIGURED, "Gemini API key is properly configured", Outcome.SUCCESS
            )
        else:
            _ = self._event_log.append(
                EventCategory.API_KEY_MISSING,
                "Gemini API key not configured - running offline",
                Outcome.FAIL,
                "Set GEMINI_API_KEY in the environment or .env file",
            )
        return configured

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self) -> HealthStatus:
        """Immutable snapshot of the current status."""
        with self._lock:
            return self._status.model_copy()

    @property
    def mode(self) -> DegradationMode:
        return self.get_status().mode

    def _replace(self, **update: object) -> None:
        # Caller holds the lock.
        self._status = self._status.model_copy(update=update)
        self._publish(self._status)

    @staticmethod
    def _publish(status: HealthStatus) -> None:
        for mode in DegradationMode:
            DEGRADATION_MODE.labels(mode=mode.value).set(1.0 if status.mode == mode else 0.0)
        DEPENDENCY_HEALTHY.set(1.0 if status.is_healthy else 0.0)
        CONSECUTIVE_ERRORS.set(status.consecutive_error_count)

"""Wiring for the resilience layer: one explicitly constructed object per process.

``build_layer()`` assembles the state store, event log, security shield, Gemini
client, health monitor and personalization analyzer around a shared clock and
scheduler.  Tests pass a ``ManualClock``/``VirtualScheduler`` pair and a fake
probe; production uses the wall clock and APScheduler.
"""

import logging
import time
from dataclasses import dataclass
from enum import StrEnum

from src.config import Settings, get_settings
from src.observability.metrics import ASK_DURATION, ASK_REQUESTS_TOTAL
from src.resilience.client import DependencyError, GeminiClient
from src.resilience.event_log import EventLog
from src.resilience.health import HealthConfig, HealthMonitor, ProbeFunc
from src.resilience.models import DegradationMode, EventCategory, Outcome
from src.resilience.personalization import PersonalizationAnalyzer, PersonalizationConfig
from src.resilience.scheduling import APSchedulerScheduler, Clock, Scheduler, SystemClock
from src.resilience.shield import SecurityShield, ShieldConfig
from src.resilience.store import StateStore

logger = logging.getLogger(__name__)

LITE_RESPONSE = (
    "Aura is running in Lite Mode while the AI service recovers. "
    "Your request was noted; try again shortly for a full answer."
)
OFFLINE_RESPONSE = "Aura's AI features are offline: no API key is configured."
THROTTLED_RESPONSE = "You're sending requests faster than usual. Aura will answer locally for a moment."
FALLBACK_RESPONSE = "Aura couldn't reach the AI service just now. Please try again."


class AskRoute(StrEnum):
    LIVE = "live"
    LITE = "lite"
    OFFLINE = "offline"
    THROTTLED = "throttled"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class AskResult:
    text: str
    route: AskRoute


@dataclass
class ResilienceLayer:
    settings: Settings
    clock: Clock
    scheduler: Scheduler
    store: StateStore
    event_log: EventLog
    shield: SecurityShield
    client: GeminiClient
    health: HealthMonitor
    personalization: PersonalizationAnalyzer
    started: bool = False

    def start(self) -> None:
        if self.started:
            return
        self.health.log_configuration_status()
        self.shield.start()
        self.health.start()
        self.personalization.start()
        self.scheduler.start()
        self.started = True
        logger.info("Resilience layer started (mode=%s)", self.health.mode.value)

    def stop(self) -> None:
        if not self.started:
            return
        self.personalization.stop()
        self.health.stop()
        self.shield.stop()
        self.scheduler.shutdown()
        self.store.close()
        self.started = False
        logger.info("Resilience layer stopped")

    async def ask(self, prompt: str) -> AskResult:
        """Route a prompt to the AI dependency or a local fallback. Never raises."""
        start = time.monotonic()
        result = await self._route(prompt)
        ASK_REQUESTS_TOTAL.labels(route=result.route.value).inc()
        ASK_DURATION.observe(time.monotonic() - start)
        return result

    async def _route(self, prompt: str) -> AskResult:
        mode = self.health.mode
        if mode == DegradationMode.OFFLINE:
            return AskResult(OFFLINE_RESPONSE, AskRoute.OFFLINE)
        if mode == DegradationMode.LITE:
            return AskResult(LITE_RESPONSE, AskRoute.LITE)
        if self.shield.is_throttled():
            return AskResult(THROTTLED_RESPONSE, AskRoute.THROTTLED)

        try:
            text = await self.client.generate(prompt)
        except DependencyError as exc:
            logger.warning("AI request failed, answering locally: %s", exc)
            _ = self.event_log.append(EventCategory.API_ERROR, "AI request failed", Outcome.FAIL, exc)
            return AskResult(FALLBACK_RESPONSE, AskRoute.FALLBACK)
        return AskResult(text, AskRoute.LIVE)


def build_layer(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    scheduler: Scheduler | None = None,
    store: StateStore | None = None,
    probe: ProbeFunc | None = None,
) -> ResilienceLayer:
    """Assemble a resilience layer from settings. Nothing is started."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    scheduler = scheduler or APSchedulerScheduler()
    store = store or StateStore(settings.state_db_path)

    event_log = EventLog(store, capacity=settings.event_log_capacity, clock=clock)
    shield = SecurityShield(
        store,
        event_log,
        scheduler=scheduler,
        clock=clock,
        config=ShieldConfig(
            max_requests_per_minute=settings.security_max_requests_per_minute,
            check_interval_seconds=settings.security_check_interval_seconds,
            rotation_interval_seconds=settings.security_rotation_interval_seconds,
        ),
    )
    client = GeminiClient(settings, shield)
    health = HealthMonitor(
        probe or client.probe,
        client.is_configured,
        event_log,
        scheduler=scheduler,
        clock=clock,
        config=HealthConfig(
            check_interval_seconds=settings.health_check_interval_seconds,
            max_errors=settings.health_max_errors,
            max_response_time_ms=settings.health_max_response_time_ms,
            auto_recover_after=settings.health_auto_recover_after,
        ),
    )
    personalization = PersonalizationAnalyzer(
        store,
        scheduler=scheduler,
        event_log=event_log,
        clock=clock,
        config=PersonalizationConfig(analysis_interval_seconds=settings.personalization_analysis_interval_seconds),
    )
    return ResilienceLayer(
        settings=settings,
        clock=clock,
        scheduler=scheduler,
        store=store,
        event_log=event_log,
        shield=shield,
        client=client,
        health=health,
        personalization=personalization,
    )

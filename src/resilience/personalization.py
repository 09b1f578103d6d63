"""Advisory focus analytics over recorded focus sessions.

Focus samples are kept for 30 days.  A periodic analysis looks at samples from
the same weekday within an hour of the current time and, with enough data,
emits insights (deep-work window, energy dip, productivity peak).  Insights of
the same type are not repeated within 5 minutes, are returned by
``get_insights()`` for an hour, and are retained for the 30-day window.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass

from pydantic import TypeAdapter

from src.observability.metrics import INSIGHTS_TOTAL
from src.resilience.event_log import EventLog
from src.resilience.models import (
    EventCategory,
    FocusSample,
    Insight,
    InsightAction,
    InsightActionType,
    InsightType,
    Outcome,
)
from src.resilience.scheduling import Clock, Scheduler, SystemClock
from src.resilience.store import FOCUS_SAMPLES_KEY, INSIGHTS_KEY, StateStore, load_state, save_state

logger = logging.getLogger(__name__)

ANALYSIS_JOB_ID = "personalization_analysis"

_SAMPLES_ADAPTER = TypeAdapter(list[FocusSample])
_INSIGHTS_ADAPTER = TypeAdapter(list[Insight])


@dataclass(frozen=True)
class PersonalizationConfig:
    analysis_interval_seconds: float = 60.0
    retention_ms: int = 30 * 24 * 60 * 60 * 1000
    insight_ttl_ms: int = 60 * 60 * 1000
    dedup_window_ms: int = 5 * 60 * 1000
    min_matching_samples: int = 3
    hour_tolerance: int = 1


class PersonalizationAnalyzer:
    def __init__(
        self,
        store: StateStore,
        *,
        scheduler: Scheduler,
        event_log: EventLog | None = None,
        config: PersonalizationConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or PersonalizationConfig()
        self._store = store
        self._scheduler = scheduler
        self._event_log = event_log
        self._clock = clock or SystemClock()
        self._samples: list[FocusSample] = []
        self._insights: list[Insight] = []
        self._running = False
        self._lock = threading.Lock()
        self._load()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._scheduler.add_interval_job(ANALYSIS_JOB_ID, self.analyze, self.config.analysis_interval_seconds)
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self._scheduler.remove_job(ANALYSIS_JOB_ID)
        self._running = False

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def record_focus_session(self, duration_minutes: float, tasks_completed: int) -> FocusSample | None:
        """Record a completed focus session. Returns None if the duration is not positive."""
        if duration_minutes <= 0:
            logger.warning("Ignoring focus session with non-positive duration: %s", duration_minutes)
            return None

        now = self._clock.now()
        now_ms = self._clock.now_ms()
        sample = FocusSample(
            hour_of_day=now.hour,
            day_of_week=now.weekday(),
            duration_minutes=duration_minutes,
            tasks_completed=tasks_completed,
            productivity=tasks_completed / (duration_minutes / 60),
            timestamp=now_ms,
        )
        cutoff = now_ms - self.config.retention_ms
        with self._lock:
            self._samples = [s for s in [*self._samples, sample] if s.timestamp > cutoff]
            snapshot = list(self._samples)
        _ = save_state(self._store, FOCUS_SAMPLES_KEY, _SAMPLES_ADAPTER, snapshot)
        return sample

    def samples(self) -> list[FocusSample]:
        with self._lock:
            return list(self._samples)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self) -> list[Insight]:
        """Run one analysis pass. Returns the insights emitted by this pass."""
        now = self._clock.now()
        hour, day = now.hour, now.weekday()
        with self._lock:
            samples = list(self._samples)

        relevant = [
            s for s in samples if abs(s.hour_of_day - hour) <= self.config.hour_tolerance and s.day_of_week == day
        ]
        if len(relevant) < self.config.min_matching_samples:
            return []

        avg = sum(s.productivity for s in relevant) / len(relevant)
        emitted: list[Insight] = []

        if avg > 2.5 and 9 <= hour <= 11:
            emitted += self._add_insight(
                InsightType.DEEP_WORK,
                "You're most productive in the morning! Enable Deep Work Mode for maximum focus?",
                0.85,
                InsightAction(
                    type=InsightActionType.ENABLE_DEEP_WORK,
                    params={"duration": 120, "silence_notifications": True},
                ),
            )

        if len(relevant) > 5 and avg < 1.0:
            emitted += self._add_insight(
                InsightType.ENERGY_MANAGEMENT,
                "Your energy seems low at this time. Consider a 15-minute break to recharge?",
                0.75,
                InsightAction(type=InsightActionType.SUGGEST_BREAK, params={"duration": 15}),
            )

        peak = find_peak_hour(samples, min_samples=self.config.min_matching_samples)
        if peak is not None and abs(hour - peak) <= self.config.hour_tolerance:
            emitted += self._add_insight(
                InsightType.PRODUCTIVITY_PEAK,
                "You're entering your peak productivity window! Time for your most important tasks.",
                0.9,
                None,
            )

        return emitted

    def _add_insight(
        self,
        insight_type: InsightType,
        message: str,
        confidence: float,
        action: InsightAction | None,
    ) -> list[Insight]:
        now_ms = self._clock.now_ms()
        with self._lock:
            duplicate = any(
                i.type == insight_type and abs(now_ms - i.timestamp) < self.config.dedup_window_ms
                for i in self._insights
            )
            if duplicate:
                return []
            insight = Insight(type=insight_type, message=message, confidence=confidence, timestamp=now_ms, action=action)
            cutoff = now_ms - self.config.retention_ms
            self._insights = [i for i in [*self._insights, insight] if i.timestamp > cutoff]
            snapshot = list(self._insights)

        _ = save_state(self._store, INSIGHTS_KEY, _INSIGHTS_ADAPTER, snapshot)
        INSIGHTS_TOTAL.labels(type=insight_type.value).inc()
        if self._event_log is not None:
            _ = self._event_log.append(
                EventCategory.INSIGHT, message, Outcome.SUCCESS, f"{insight_type.value} (confidence {confidence:.2f})"
            )
        return [insight]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_insights(self) -> list[Insight]:
        """Insights emitted within the last hour, oldest first."""
        now_ms = self._clock.now_ms()
        with self._lock:
            return [i for i in self._insights if now_ms - i.timestamp < self.config.insight_ttl_ms]

    def insight_history(self) -> list[Insight]:
        with self._lock:
            return list(self._insights)

    def clear_insights(self) -> None:
        with self._lock:
            self._insights = []
        _ = save_state(self._store, INSIGHTS_KEY, _INSIGHTS_ADAPTER, [])

    def _load(self) -> None:
        cutoff = self._clock.now_ms() - self.config.retention_ms
        samples = load_state(self._store, FOCUS_SAMPLES_KEY, _SAMPLES_ADAPTER)
        if samples is not None:
            self._samples = [s for s in samples if s.timestamp > cutoff]
        insights = load_state(self._store, INSIGHTS_KEY, _INSIGHTS_ADAPTER)
        if insights is not None:
            self._insights = [i for i in insights if i.timestamp > cutoff]


def find_peak_hour(samples: list[FocusSample], *, min_samples: int = 3) -> int | None:
    """Hour of day with the highest mean productivity among hours with enough samples."""
    by_hour: dict[int, list[float]] = defaultdict(list)
    for sample in samples:
        by_hour[sample.hour_of_day].append(sample.productivity)

    peak: int | None = None
    best = 0.0
    for hour, values in sorted(by_hour.items()):
        if len(values) < min_samples:
            continue
        avg = sum(values) / len(values)
        if avg > best:
            best = avg
            peak = hour
    return peak

"""Bounded, persisted log of resilience events shared by every component.

Newest entries first.  Capacity eviction drops the oldest entries regardless
of category or outcome.  Every append is persisted; every read reloads from
the store so a second process sees the latest state.  A failed write marks
the log dirty: reads retry the write and keep memory until it succeeds.
"""

import logging
import threading

from pydantic import TypeAdapter

from src.observability.metrics import RESILIENCE_EVENTS_TOTAL
from src.resilience.models import EventCategory, Outcome, ResilienceEvent
from src.resilience.scheduling import Clock, SystemClock
from src.resilience.store import EVENT_LOG_KEY, StateStore, load_state, save_state

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50

_EVENTS_ADAPTER = TypeAdapter(list[ResilienceEvent])


class EventLog:
    def __init__(
        self,
        store: StateStore,
        *,
        capacity: int = DEFAULT_CAPACITY,
        clock: Clock | None = None,
    ) -> None:
        if capacity < 1:
            msg = f"Event log capacity must be positive, got {capacity}"
            raise ValueError(msg)
        self._store = store
        self._clock = clock or SystemClock()
        self.capacity = capacity
        self._events: list[ResilienceEvent] = []
        self._dirty = False
        self._lock = threading.Lock()
        self._reload()

    def append(
        self,
        category: EventCategory,
        message: str,
        outcome: Outcome,
        detail: object | None = None,
    ) -> ResilienceEvent:
        """Record an event. Never raises; persistence failures are only logged."""
        event = ResilienceEvent(
            category=category,
            message=message,
            outcome=outcome,
            timestamp=self._clock.now_ms(),
            detail=str(detail) if detail is not None else None,
        )
        with self._lock:
            self._events = [event, *self._events][: self.capacity]
            self._persist()

        RESILIENCE_EVENTS_TOTAL.labels(category=category.value, outcome=outcome.value).inc()
        logger.info("[Self-Healing] %s: %s - %s", category.value, message, outcome.value)
        return event

    def list(self) -> list[ResilienceEvent]:
        """Return events newest-first, reloading persisted state first."""
        self._reload()
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events = []
            self._persist()
        logger.info("Event log cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _persist(self) -> None:
        # Caller holds the lock, so writes land in append order.
        self._dirty = not save_state(self._store, EVENT_LOG_KEY, _EVENTS_ADAPTER, self._events)

    def _reload(self) -> None:
        with self._lock:
            if self._dirty:
                self._persist()
                if self._dirty:
                    # The store holds an older log than memory.
                    return
            # Missing or corrupt state keeps the in-memory snapshot.
            loaded = load_state(self._store, EVENT_LOG_KEY, _EVENTS_ADAPTER)
            if loaded is not None:
                self._events = loaded[: self.capacity]

"""Unit tests for the security shield: manual clock and virtual scheduler."""

from prometheus_client import REGISTRY

from src.resilience.event_log import EventLog
from src.resilience.models import (
    EventCategory,
    Outcome,
    RiskLevel,
    SecurityEventKind,
    Severity,
)
from src.resilience.scheduling import ManualClock, VirtualScheduler
from src.resilience.shield import (
    CHECK_JOB_ID,
    ROTATION_JOB_ID,
    SecurityShield,
    ShieldConfig,
    is_bot_like,
)
from src.resilience.store import SECURITY_EVENTS_KEY, SESSION_CREDENTIAL_KEY, StateStore


def _make_shield(
    store: StateStore,
    event_log: EventLog,
    scheduler: VirtualScheduler,
    clock: ManualClock,
    config: ShieldConfig | None = None,
) -> SecurityShield:
    return SecurityShield(store, event_log, scheduler=scheduler, clock=clock, config=config)


def _kinds(shield: SecurityShield) -> list[SecurityEventKind]:
    return [e.kind for e in shield.all_events()]


def _record_spaced(shield: SecurityShield, clock: ManualClock, count: int, spacing_ms: int) -> None:
    for i in range(count):
        if i:
            clock.advance(ms=spacing_ms)
        shield.record_call()


def _record_burst(shield: SecurityShield, clock: ManualClock, count: int) -> None:
    """Record calls about 500ms apart with irregular, human-looking jitter."""
    gaps = (100, 900, 350, 650)
    for i in range(count):
        if i:
            clock.advance(ms=gaps[i % len(gaps)])
        shield.record_call()


# ---------------------------------------------------------------------------
# Bot-like detection heuristic
# ---------------------------------------------------------------------------


class TestIsBotLike:
    def test_requires_minimum_samples(self) -> None:
        assert is_bot_like([0, 200, 400, 600]) is False

    def test_regular_cadence_is_suspicious(self) -> None:
        assert is_bot_like([0, 200, 400, 600, 800]) is True

    def test_irregular_cadence_is_not(self) -> None:
        assert is_bot_like([0, 1_500, 2_100, 9_000, 9_400, 20_000]) is False

    def test_threshold_is_exclusive(self) -> None:
        # intervals 100 and 160 alternate: mean 130, variance 900
        assert is_bot_like([0, 100, 260, 360, 520], variance_threshold=900.0) is False
        assert is_bot_like([0, 100, 260, 360, 520], variance_threshold=900.1) is True

    def test_unsorted_input(self) -> None:
        assert is_bot_like([800, 0, 400, 200, 600]) is True


# ---------------------------------------------------------------------------
# Accounting
# ---------------------------------------------------------------------------


class TestRecordCall:
    def test_updates_credential_usage(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        created = shield.credential.created_at
        clock.advance(5)
        shield.record_call()
        shield.record_call()

        cred = shield.credential
        assert cred.usage_count == 2
        assert cred.last_used_at == clock.now_ms()
        assert cred.created_at == created

    def test_never_rejects_beyond_limit(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock, ShieldConfig(max_requests_per_minute=2))
        for _ in range(5):
            shield.record_call()
        assert len(shield.recent_calls()) == 5
        assert shield.is_throttled() is True

    def test_throttle_releases_after_window(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock, ShieldConfig(max_requests_per_minute=2))
        for _ in range(3):
            shield.record_call()
        clock.advance(61)
        assert shield.is_throttled() is False
        assert shield.recent_calls() == []

    def test_counts_recorded_calls_metric(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        before = REGISTRY.get_sample_value("resilience_api_calls_recorded_total") or 0.0
        shield.record_call()
        assert (REGISTRY.get_sample_value("resilience_api_calls_recorded_total") or 0.0) - before == 1.0


# ---------------------------------------------------------------------------
# Periodic usage checks
# ---------------------------------------------------------------------------


class TestCheckUsage:
    def test_spike_emits_one_event_and_rotates(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        previous = shield.credential
        _record_burst(shield, clock, 61)

        shield.check_usage()

        kinds = _kinds(shield)
        assert kinds.count(SecurityEventKind.API_SPIKE) == 1
        assert kinds.count(SecurityEventKind.SESSION_ROTATION) == 1
        assert kinds.index(SecurityEventKind.API_SPIKE) < kinds.index(SecurityEventKind.SESSION_ROTATION)
        assert shield.credential.value != previous.value
        assert shield.credential.created_at > previous.created_at

    def test_spike_fires_once_per_episode(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_burst(shield, clock, 61)

        shield.check_usage()
        clock.advance(10)
        shield.check_usage()

        assert _kinds(shield).count(SecurityEventKind.API_SPIKE) == 1

    def test_spike_rearms_after_window_clears(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_burst(shield, clock, 61)
        shield.check_usage()

        clock.advance(120)
        shield.check_usage()
        _record_burst(shield, clock, 61)
        shield.check_usage()

        assert _kinds(shield).count(SecurityEventKind.API_SPIKE) == 2

    def test_at_limit_is_not_a_spike(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_burst(shield, clock, 60)
        shield.check_usage()
        assert SecurityEventKind.API_SPIKE not in _kinds(shield)

    def test_regular_cadence_emits_unusual_activity_only(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        original = shield.credential
        _record_spaced(shield, clock, 5, spacing_ms=200)

        shield.check_usage()

        assert _kinds(shield) == [SecurityEventKind.UNUSUAL_ACTIVITY]
        event = shield.all_events()[0]
        assert event.severity == Severity.MEDIUM
        assert event.auto_response == "Enhanced monitoring activated"
        assert shield.credential.value == original.value

    async def test_unusual_activity_fires_once_per_episode(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_spaced(shield, clock, 5, spacing_ms=200)

        shield.start()

        # five scheduled checks, all within the same minute
        await scheduler.advance(50)

        assert _kinds(shield) == [SecurityEventKind.UNUSUAL_ACTIVITY]

    def test_fewer_than_five_calls_never_anomalous(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_spaced(shield, clock, 4, spacing_ms=200)
        shield.check_usage()
        assert shield.all_events() == []

    def test_human_paced_calls_are_quiet(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        for gap in (0, 3_100, 900, 7_400, 2_200, 11_000):
            clock.advance(ms=gap)
            shield.record_call()
        shield.check_usage()
        assert shield.all_events() == []

    def test_events_forwarded_to_event_log(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_burst(shield, clock, 61)
        shield.check_usage()

        security = [e for e in event_log.list() if e.category == EventCategory.SECURITY]
        # newest first: rotation, then the spike that caused it
        assert security[0].message.startswith("session_rotation")
        assert security[0].outcome == Outcome.SUCCESS
        assert security[-1].message.startswith("api_spike")
        assert security[-1].outcome == Outcome.FAIL


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------


class TestRotation:
    def test_rotation_replaces_credential(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.record_call()
        old = shield.credential

        new = shield.rotate_credential()

        assert new.value != old.value
        assert new.value.startswith("sk-")
        assert len(new.value) == len("sk-") + 64
        assert new.usage_count == 0
        assert new.created_at > old.created_at
        assert shield.get_current_session_key() == new.value

    def test_rotation_event_is_low_severity(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.rotate_credential()
        (event,) = shield.all_events()
        assert event.kind == SecurityEventKind.SESSION_ROTATION
        assert event.severity == Severity.LOW
        assert "Session key rotated from sk-" in event.detail

    def test_threat_triggers_rotation(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        old = shield.get_current_session_key()
        shield.report_threat("Credential replay attempt")

        assert _kinds(shield) == [SecurityEventKind.THREAT_DETECTED, SecurityEventKind.SESSION_ROTATION]
        assert shield.get_current_session_key() != old

    async def test_scheduled_rotation_every_fifteen_minutes(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.start()

        await scheduler.advance(15 * 60 - 1)
        assert SecurityEventKind.SESSION_ROTATION not in _kinds(shield)

        await scheduler.advance(1)
        assert _kinds(shield).count(SecurityEventKind.SESSION_ROTATION) == 1

        await scheduler.advance(15 * 60)
        assert _kinds(shield).count(SecurityEventKind.SESSION_ROTATION) == 2


# ---------------------------------------------------------------------------
# Status and recent events
# ---------------------------------------------------------------------------


class TestStatus:
    def test_quiet_shield_is_low_risk(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        status = shield.get_status()
        assert status.current_risk == RiskLevel.LOW
        assert status.is_secure is True
        assert status.threats_detected == 0
        assert status.last_rotation == shield.credential.created_at

    def test_high_event_is_medium_risk(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        _record_burst(shield, clock, 61)
        shield.check_usage()

        status = shield.get_status()
        assert status.current_risk == RiskLevel.MEDIUM
        assert status.is_secure is True

    def test_critical_event_is_high_risk(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.report_threat("Injected prompt detected")

        status = shield.get_status()
        assert status.current_risk == RiskLevel.HIGH
        assert status.is_secure is False
        assert status.last_rotation == shield.credential.created_at

    def test_risk_decays_after_an_hour(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.report_threat("Injected prompt detected")
        clock.advance(3600)
        assert shield.get_status().current_risk == RiskLevel.LOW

    def test_recent_events_newest_first_capped(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        for _ in range(12):
            clock.advance(60)
            shield.rotate_credential()

        recent = shield.get_recent_events()
        assert len(recent) == 10
        assert recent == sorted(recent, key=lambda e: e.timestamp, reverse=True)
        assert recent[0].timestamp == clock.now_ms()

    def test_recent_events_exclude_older_than_a_day(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.rotate_credential()
        clock.advance(24 * 3600)
        shield.rotate_credential()

        recent = shield.get_recent_events()
        assert len(recent) == 1
        assert len(shield.all_events()) == 2

    def test_event_list_capped_at_fifty(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        for _ in range(55):
            shield.rotate_credential()
        assert len(shield.all_events()) == 50


# ---------------------------------------------------------------------------
# Lifecycle and persistence
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_is_idempotent(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.start()
        shield.start()
        assert scheduler.job_ids == sorted([CHECK_JOB_ID, ROTATION_JOB_ID])

    def test_stop_removes_jobs(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.start()
        shield.stop()
        shield.stop()
        assert scheduler.job_ids == []
        assert shield.running is False


class TestPersistence:
    def test_state_survives_restart(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        shield = _make_shield(store, event_log, scheduler, clock)
        shield.report_threat("Injected prompt detected")

        restarted = _make_shield(store, event_log, scheduler, clock)
        assert restarted.all_events() == shield.all_events()
        assert restarted.credential == shield.credential

    def test_corrupt_state_falls_back_to_fresh(
        self, store: StateStore, event_log: EventLog, scheduler: VirtualScheduler, clock: ManualClock
    ) -> None:
        store.write(SECURITY_EVENTS_KEY, "garbage")
        store.write(SESSION_CREDENTIAL_KEY, '{"value": null}')

        shield = _make_shield(store, event_log, scheduler, clock)
        assert shield.all_events() == []
        assert shield.get_current_session_key().startswith("sk-")

"""Pydantic models for resilience events, security state, health and focus analytics.

Records that must not change after creation are frozen; services replace them
wholesale (``model_copy(update=...)``) instead of mutating fields.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Outcome(StrEnum):
    SUCCESS = "Success"
    FAIL = "Fail"


class EventCategory(StrEnum):
    HEALTH_CHECK = "HEALTH_CHECK"
    SLOW_RESPONSE = "SLOW_RESPONSE"
    API_ERROR = "API_ERROR"
    MODE_SWITCH = "MODE_SWITCH"
    MODE_RECOVERY = "MODE_RECOVERY"
    DEPENDENCY_OFFLINE = "DEPENDENCY_OFFLINE"
    API_KEY_CONFIGURED = "API_KEY_CONFIGURED"
    API_KEY_MISSING = "API_KEY_MISSING"
    SECURITY = "SECURITY"
    INSIGHT = "INSIGHT"


class ResilienceEvent(BaseModel):
    """A single entry in the shared event log."""

    model_config = ConfigDict(frozen=True)

    category: EventCategory
    message: str
    outcome: Outcome
    timestamp: int  # epoch ms
    detail: str | None = None


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------


class SecurityEventKind(StrEnum):
    API_SPIKE = "api_spike"
    UNUSUAL_ACTIVITY = "unusual_activity"
    SESSION_ROTATION = "session_rotation"
    THREAT_DETECTED = "threat_detected"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SecurityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: SecurityEventKind
    severity: Severity
    timestamp: int  # epoch ms
    detail: str
    auto_response: str


class SessionCredential(BaseModel):
    """Opaque per-process nonce used for usage bookkeeping, not authentication."""

    model_config = ConfigDict(frozen=True)

    value: str
    created_at: int  # epoch ms
    last_used_at: int  # epoch ms
    usage_count: int = 0


class SecurityStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_secure: bool
    threats_detected: int
    last_rotation: int  # epoch ms
    current_risk: RiskLevel


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class DegradationMode(StrEnum):
    NORMAL = "normal"
    LITE = "lite"
    OFFLINE = "offline"


class HealthStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_healthy: bool = True
    last_check_at: int = 0  # epoch ms
    last_response_time_ms: int = 0
    consecutive_error_count: int = 0
    mode: DegradationMode = DegradationMode.NORMAL


class ProbeResult(BaseModel):
    """Result of a round-trip to the AI dependency. ``error`` is set on failure."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Personalization
# ---------------------------------------------------------------------------


class FocusSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    hour_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6)  # Monday = 0
    duration_minutes: float
    tasks_completed: int
    productivity: float  # tasks per hour
    timestamp: int  # epoch ms


class InsightType(StrEnum):
    DEEP_WORK = "deep_work"
    ENERGY_MANAGEMENT = "energy_management"
    PRODUCTIVITY_PEAK = "productivity_peak"


class InsightActionType(StrEnum):
    ENABLE_DEEP_WORK = "enable_deep_work"
    SUGGEST_BREAK = "suggest_break"
    OPTIMIZE_SCHEDULE = "optimize_schedule"


class InsightAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: InsightActionType
    params: dict[str, Any] = Field(default_factory=dict)


class Insight(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: InsightType
    message: str
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: int  # epoch ms
    action: InsightAction | None = None

"""FastAPI backend exposing the resilience layer to operators and clients.

The layer is built and started once in the lifespan and shared across
requests.  Every read endpoint is side-effect free and safe to poll.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from src.config import get_settings
from src.observability.metrics import APP_INFO
from src.resilience.layer import ResilienceLayer, build_layer
from src.resilience.models import (
    FocusSample,
    HealthStatus,
    Insight,
    ResilienceEvent,
    SecurityEvent,
    SecurityStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class AskRequest(BaseModel):
    """Request body for POST /ask."""

    prompt: str = Field(min_length=1, max_length=4000)


class AskResponse(BaseModel):
    """Response body for POST /ask."""

    response: str
    route: str
    mode: str


class FocusSessionRequest(BaseModel):
    """Request body for POST /focus-sessions."""

    duration_minutes: float = Field(gt=0)
    tasks_completed: int = Field(ge=0)


class ClearedResponse(BaseModel):
    cleared: bool


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build and start the resilience layer at startup, stop it on shutdown."""
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    APP_INFO.info({"version": "0.1.0", "model": settings.gemini_model})

    layer = build_layer(settings)
    app.state.layer = layer
    layer.start()
    yield
    layer.stop()
    logger.info("Shutting down resilience layer")


app = FastAPI(title="Aura Resilience Layer", lifespan=lifespan)


def _layer(request: Request) -> ResilienceLayer:
    return request.app.state.layer


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthStatus)
async def health(request: Request) -> HealthStatus:
    """Current health snapshot of the AI dependency."""
    return _layer(request).health.get_status()


@app.post("/health/reset", response_model=HealthStatus)
async def reset_health(request: Request) -> HealthStatus:
    """Clear the error streak and leave lite mode (operator action)."""
    return _layer(request).health.reset_errors()


@app.get("/security/status", response_model=SecurityStatus)
async def security_status(request: Request) -> SecurityStatus:
    return _layer(request).shield.get_status()


@app.get("/security/events", response_model=list[SecurityEvent])
async def security_events(request: Request) -> list[SecurityEvent]:
    """Security events from the last 24 hours, newest first (max 10)."""
    return _layer(request).shield.get_recent_events()


@app.get("/events", response_model=list[ResilienceEvent])
async def events(request: Request) -> list[ResilienceEvent]:
    """Resilience event log, newest first."""
    return _layer(request).event_log.list()


@app.delete("/events", response_model=ClearedResponse)
async def clear_events(request: Request) -> ClearedResponse:
    _layer(request).event_log.clear()
    return ClearedResponse(cleared=True)


@app.post("/focus-sessions", response_model=FocusSample | None)
async def record_focus_session(body: FocusSessionRequest, request: Request) -> FocusSample | None:
    return _layer(request).personalization.record_focus_session(body.duration_minutes, body.tasks_completed)


@app.get("/insights", response_model=list[Insight])
async def insights(request: Request) -> list[Insight]:
    """Personalized insights from the last hour."""
    return _layer(request).personalization.get_insights()


@app.post("/ask", response_model=AskResponse)
async def ask(body: AskRequest, request: Request) -> AskResponse:
    """Send a prompt through the resilience layer (live call or local fallback)."""
    layer = _layer(request)
    result = await layer.ask(body.prompt)
    return AskResponse(response=result.text, route=result.route.value, mode=layer.health.mode.value)

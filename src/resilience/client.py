"""HTTP client for the Gemini ``generateContent`` API: the AI dependency boundary.

Every request is accounted by the security shield before it leaves the
process, including health probes.  ``generate()`` raises ``DependencyError``;
``probe()`` never raises and reports failures in ``ProbeResult.error``.
"""

import logging
from typing import Any, Protocol

import httpx

from src.config import Settings, get_settings
from src.resilience.models import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
PROMPT_PREFIX = "As Aura, an autonomous AI assistant, respond to: "


class DependencyError(Exception):
    """The AI dependency failed, was unreachable, or returned an unusable body."""


class CallRecorder(Protocol):
    def record_call(self) -> None: ...


def is_dependency_configured(settings: Settings | None = None) -> bool:
    """Check whether an API key for the AI dependency is present."""
    settings = settings or get_settings()
    return bool(settings.gemini_api_key)


class GeminiClient:
    def __init__(
        self,
        settings: Settings,
        recorder: CallRecorder | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._recorder = recorder
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def endpoint(self) -> str:
        base = self._settings.gemini_base_url.rstrip("/")
        return f"{base}/models/{self._settings.gemini_model}:generateContent"

    def is_configured(self) -> bool:
        return is_dependency_configured(self._settings)

    async def generate(self, prompt: str) -> str:
        """Send a prompt and return the first candidate's text.

        Raises:
            DependencyError: On missing configuration, transport errors, non-2xx
                responses or malformed response bodies.
        """
        if self._recorder is not None:
            self._recorder.record_call()

        if not self.is_configured():
            msg = "Gemini API key not configured (GEMINI_API_KEY is empty)"
            raise DependencyError(msg)

        payload: dict[str, Any] = {
            "contents": [{"parts": [{"text": f"{PROMPT_PREFIX}{prompt}"}]}],
            "generationConfig": {
                "temperature": self._settings.gemini_temperature,
                "maxOutputTokens": self._settings.gemini_max_tokens,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.endpoint,
                    params={"key": self._settings.gemini_api_key},
                    json=payload,
                )
                _ = resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"API Error: {exc.response.status_code}"
            raise DependencyError(msg) from exc
        except httpx.TimeoutException as exc:
            msg = f"Gemini request timed out after {self._timeout}s"
            raise DependencyError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"Cannot connect to Gemini API: {exc}"
            raise DependencyError(msg) from exc

        try:
            body: dict[str, Any] = resp.json()
            text = body["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            msg = "Unexpected response body from Gemini API"
            raise DependencyError(msg) from exc
        return str(text)

    async def probe(self, prompt: str) -> ProbeResult:
        """Minimal round-trip used by the health monitor. Never raises."""
        try:
            text = await self.generate(prompt)
        except DependencyError as exc:
            logger.debug("Probe failed: %s", exc)
            return ProbeResult(error=str(exc))
        return ProbeResult(text=text)

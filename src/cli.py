"""Simple CLI REPL that routes prompts through the resilience layer.

Usage:
    python -m src.cli

Commands:
    /status    health mode and security risk
    /events    recent resilience events
    /security  recent security events
    /reset     clear the error streak and leave lite mode
"""

import asyncio
import logging
import sys
from datetime import datetime

from src.config import get_settings
from src.resilience.layer import ResilienceLayer, build_layer

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def _fmt_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _print_status(layer: ResilienceLayer) -> None:
    health = layer.health.get_status()
    security = layer.shield.get_status()
    print(f"Mode: {health.mode.value} (healthy={health.is_healthy}, errors={health.consecutive_error_count})")
    print(f"Last check: {_fmt_ms(health.last_check_at)} ({health.last_response_time_ms}ms)")
    print(f"Security risk: {security.current_risk.value} ({security.threats_detected} events in the last hour)")


def _print_events(layer: ResilienceLayer) -> None:
    events = layer.event_log.list()[:10]
    if not events:
        print("No events recorded.")
    for event in events:
        detail = f" ({event.detail})" if event.detail else ""
        print(f"{_fmt_ms(event.timestamp)}  [{event.category.value}] {event.outcome.value}: {event.message}{detail}")


def _print_security(layer: ResilienceLayer) -> None:
    events = layer.shield.get_recent_events()
    if not events:
        print("No security events in the last 24 hours.")
    for event in events:
        print(f"{_fmt_ms(event.timestamp)}  {event.kind.value} [{event.severity.value}] {event.detail}")
        print(f"    -> {event.auto_response}")


async def _repl(layer: ResilienceLayer) -> None:
    layer.start()
    try:
        while True:
            try:
                line = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            if not line:
                continue
            if line.lower() in ("quit", "exit", "q"):
                print("Goodbye!")
                break
            if line == "/status":
                _print_status(layer)
            elif line == "/events":
                _print_events(layer)
            elif line == "/security":
                _print_security(layer)
            elif line == "/reset":
                status = layer.health.reset_errors()
                print(f"Error streak cleared; mode is {status.mode.value}")
            else:
                result = await layer.ask(line)
                print(f"\nAura [{result.route.value}]: {result.text}\n")
    finally:
        layer.stop()


def main() -> None:
    """Run the interactive CLI loop."""
    print("Aura Resilience CLI (type 'quit' or Ctrl+C to exit)")
    print("=" * 50)

    try:
        layer = build_layer(get_settings())
    except Exception as e:
        print(f"Failed to build resilience layer: {e}")
        print("Check your .env file settings.")
        sys.exit(1)

    asyncio.run(_repl(layer))


if __name__ == "__main__":
    main()

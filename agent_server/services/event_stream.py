"""Agent Event Stream — ordered in-process pub/sub for agent events, plus the client bridge.

Invariants:
    - Events are delivered to subscribers in emission order, one at a time
    - A failing subscriber is logged and skipped; it never breaks the agent loop
    - Every event carries id (uuid4), type, and timestamp (ms since epoch)
    - Unsubscribing twice is harmless

Design Decisions:
    - send_event() is async and awaits async handlers in turn: persistence is a
      suspension point, and awaiting it keeps stored order equal to emission order
    - EventStreamBridge fans one agent stream out to live client listeners under
      named channels ("agent-event", "ready", "error", "closed")
"""

import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None] | None]


def create_event(event_type: str, **fields: Any) -> dict:
    """Build an event dict with a fresh id and a millisecond timestamp."""
    return {
        "id": str(uuid.uuid4()),
        "type": event_type,
        "timestamp": int(time.time() * 1000),
        **fields,
    }


async def _call(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class AgentEventStream:
    """Ordered event log of one agent with subscriber fan-out."""

    def __init__(self, initial_events: list[dict] | None = None):
        self._events: list[dict] = list(initial_events or [])
        self._handlers: list[EventHandler] = []

    async def send_event(self, event: dict) -> None:
        self._events.append(event)
        for handler in list(self._handlers):
            try:
                await _call(handler, event)
            except Exception as e:
                logger.error(
                    f"Event subscriber failed on {event.get('type')}: {e}",
                    extra={"event_type": event.get("type")},
                )

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register `handler`; returns a callable that removes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def get_events(self, types: list[str] | None = None) -> list[dict]:
        if types is None:
            return list(self._events)
        return [e for e in self._events if e.get("type") in types]

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)


class EventStreamBridge:
    """Relays agent events and session notices to live client listeners."""

    def __init__(self):
        self._listeners: dict[str, list[Callable[[dict], Any]]] = {}

    def on(self, channel: str, listener: Callable[[dict], Any]) -> Callable[[], None]:
        listeners = self._listeners.setdefault(channel, [])
        listeners.append(listener)

        def off() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return off

    async def emit(self, channel: str, payload: dict) -> None:
        for listener in list(self._listeners.get(channel, [])):
            try:
                await _call(listener, payload)
            except Exception as e:
                logger.error(f"Bridge listener on '{channel}' failed: {e}")

    def connect(self, stream: AgentEventStream) -> Callable[[], None]:
        """Forward every event of `stream` to "agent-event" listeners."""
        async def forward(event: dict) -> None:
            await self.emit("agent-event", event)

        return stream.subscribe(forward)

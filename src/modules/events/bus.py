"""EventBus: in-process publish/subscribe channel for outbox events."""

from __future__ import annotations

import fnmatch
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from src.exceptions import TransientPublishError
from src.modules.events.schemas import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Routes published events to explicitly registered async handlers.

    Patterns are matched with shell-style wildcards, so ``"*"`` receives
    every event and ``"game.*"`` every event in the ``game`` namespace.
    Handlers run in registration order. If any handler raises, the remaining
    handlers still run and the publish as a whole fails with
    :class:`TransientPublishError`, which the relay treats as retryable.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Register a handler for every event name matching ``pattern``."""
        self._handlers[pattern].append(handler)
        logger.info("Registered handler %s for %s", _handler_name(handler), pattern)

    def get_handlers(self, event_name: str) -> list[EventHandler]:
        """Return all handlers whose pattern matches ``event_name``."""
        return [
            handler
            for pattern, handlers in self._handlers.items()
            if fnmatch.fnmatchcase(event_name, pattern)
            for handler in handlers
        ]

    async def publish(self, event: DomainEvent) -> list[dict]:
        """Deliver ``event`` to every matching handler.

        Returns a list of result dicts with handler name and status.
        """
        handlers = self.get_handlers(event.name)
        if not handlers:
            logger.debug("No handlers registered for event %s", event.name)

        results = []
        for handler in handlers:
            try:
                await handler(event)
                results.append({"handler": _handler_name(handler), "status": "ok"})
            except Exception as exc:
                logger.exception(
                    "Handler %s failed for event %s (correlation_id=%s)",
                    _handler_name(handler),
                    event.name,
                    event.metadata.correlation_id,
                )
                results.append({
                    "handler": _handler_name(handler),
                    "status": "error",
                    "error": str(exc),
                })

        errors = [r for r in results if r["status"] == "error"]
        if errors:
            message = "; ".join(f"{r['handler']}: {r['error']}" for r in errors)
            raise TransientPublishError(event.name, RuntimeError(f"Handler errors: {message}"))
        return results

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__

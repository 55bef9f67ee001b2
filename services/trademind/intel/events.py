# services/trademind/intel/events.py
"""
Domain events published by the reconciliation core.

The core never touches view state directly: it publishes what changed and
the HTTP layer (or a test) subscribes.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type


@dataclass
class DomainEvent:
    """Base class for all domain events."""

    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    origin: str = "reconciler"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "occurred_at": self.occurred_at.isoformat(),
            "origin": self.origin,
            "data": {
                k: v for k, v in self.__dict__.items()
                if k not in ("occurred_at", "origin")
            },
        }


@dataclass
class StateChanged(DomainEvent):
    """Published after every write to the reconciler state."""
    reason: str = ""  # initialize, auth:SIGNED_IN, refresh, view, ...
    state: Optional[Any] = None


@dataclass
class ConnectionLost(DomainEvent):
    """Published when a connection-classified error reaches a gate."""
    during: str = ""
    message: str = ""


@dataclass
class PolicyErrorDetected(DomainEvent):
    """Published when a recursion-classified error reaches a gate."""
    during: str = ""
    message: str = ""


class EventBus:
    """In-process publish/subscribe with per-handler fault isolation."""

    def __init__(self, logger):
        self.logger = logger
        self._handlers: Dict[Type[DomainEvent], List[Callable]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: Callable) -> Callable[[], None]:
        """Register an async handler; returns a callable that removes it."""
        self._handlers[event_type].append(handler)

        def remove() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return remove

    async def publish(self, event: DomainEvent) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                await handler(event)
            except Exception as e:
                self.logger.error(
                    f"event handler failed for {type(event).__name__}: {e}",
                    emoji="💥",
                )

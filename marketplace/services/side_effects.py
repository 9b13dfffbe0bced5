"""Post-commit side effects and the in-process domain event bus.

Nothing in this module may undo a committed transaction: every step and
every event handler is run in isolation and its failure is logged, never
raised.
"""

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Domain events published after an order transaction commits."""

    ORDER_COMPLETED = "order.completed"
    ORDER_REFUNDED = "order.refunded"
    SELLER_SALE_MADE = "seller.sale_made"


class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous publish/subscribe bus.

    Handlers run in the publishing thread, one after another. A failing
    handler is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: EventHandler, name: str | None = None) -> None:
        with self._lock:
            self._handlers[event_type].append((name or getattr(handler, "__qualname__", repr(handler)), handler))

    def publish(self, event: DomainEvent) -> int:
        """Dispatch an event to its handlers.

        Returns:
            int: Number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        delivered = 0
        for name, handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s (%s)", name, event.event_type.value, event.event_id
                )

        logger.info(
            "Published %s (%s) to %d/%d handlers",
            event.event_type.value,
            event.event_id,
            delivered,
            len(handlers),
        )
        return delivered


class PostCommitEffects:
    """Ordered list of independent steps run after a commit.

    Usage:
        effects = PostCommitEffects("order ORD-...")
        effects.add("mark_cart_converted", cart_service.mark_cart_converted, cart_id)
        effects.add("send_confirmation", email.send_order_confirmation, ...)
        failed = effects.run()
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._steps: list[tuple[str, Callable[..., Any], tuple, dict]] = []

    def add(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "PostCommitEffects":
        self._steps.append((name, fn, args, kwargs))
        return self

    @property
    def step_names(self) -> list[str]:
        return [name for name, _, _, _ in self._steps]

    def run(self) -> list[str]:
        """Run every step, catching each failure.

        Returns:
            list[str]: Names of the steps that raised.
        """
        failed: list[str] = []
        for name, fn, args, kwargs in self._steps:
            try:
                fn(*args, **kwargs)
            except Exception as e:
                failed.append(name)
                logger.warning("Post-commit step %s failed for %s: %s", name, self.label, e)
        if failed:
            logger.warning("%d of %d post-commit steps failed for %s", len(failed), len(self._steps), self.label)
        return failed

"""Typed "order completed" notification for list/dashboard refreshes."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderCompleted:
    order_id: int
    order_number: str
    customer_id: int | None
    draft_id: str


Listener = Callable[[OrderCompleted], Union[Awaitable[None], None]]


class CompletionNotifier:
    """Session-scoped listeners, called in subscription order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, event: OrderCompleted) -> None:
        # The order is already committed at this point
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "Order-completed listener %r failed: %s", listener, exc,
                    exc_info=True,
                )

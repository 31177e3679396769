from __future__ import annotations

import inspect
import itertools
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from flowstate.schemas.context import ContextEvent

logger = logging.getLogger("flowstate.context.subscriptions")

ContextCallback = Callable[[ContextEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by `SubscriptionRegistry.subscribe`; unsubscribing twice is a no-op."""

    def __init__(self, registry: "SubscriptionRegistry", user_id: str, token: int):
        self._registry = registry
        self.user_id = user_id
        self.token = token

    @property
    def active(self) -> bool:
        return self._registry.has(self.user_id, self.token)

    def unsubscribe(self) -> None:
        self._registry.remove(self.user_id, self.token)


class SubscriptionRegistry:
    """Per-user fan-out of context changes to explicit callbacks."""

    def __init__(self) -> None:
        self._subs: Dict[str, Dict[int, ContextCallback]] = defaultdict(dict)
        self._tokens = itertools.count(1)

    def subscribe(self, user_id: str, callback: ContextCallback) -> Subscription:
        token = next(self._tokens)
        self._subs[user_id][token] = callback
        return Subscription(self, user_id, token)

    def has(self, user_id: str, token: int) -> bool:
        return token in self._subs.get(user_id, {})

    def remove(self, user_id: str, token: int) -> None:
        subs = self._subs.get(user_id)
        if not subs:
            return
        subs.pop(token, None)
        if not subs:
            del self._subs[user_id]

    def count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._subs.get(user_id, {}))
        return sum(len(s) for s in self._subs.values())

    async def notify(self, event: ContextEvent) -> int:
        """Deliver `event` to every subscriber of its user. A failing callback is logged and skipped."""
        delivered = 0
        for token, callback in list(self._subs.get(event.user_id, {}).items()):
            try:
                result: Any = callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Context subscriber failed user=%s token=%s", event.user_id, token)
        return delivered

    def clear(self) -> None:
        self._subs.clear()

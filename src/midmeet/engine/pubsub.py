"""
Per-session subscriber registry.

Subscribers receive full session snapshots (never deltas), so duplicate or repeated
deliveries are harmless. Each subscriber gets its own deep copy; a subscriber that
raises is logged and skipped without affecting the others or the session.
"""

from __future__ import annotations

import itertools
import logging
from typing import Callable

from midmeet.domain.models import Session

logger = logging.getLogger(__name__)

Subscriber = Callable[[Session], None]


class SubscriberRegistry:
    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, Subscriber]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, session_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; the returned function detaches it (idempotent)."""
        token = next(self._tokens)
        self._subscribers.setdefault(session_id, {})[token] = callback

        def unsubscribe() -> None:
            subs = self._subscribers.get(session_id)
            if subs is None:
                return
            subs.pop(token, None)
            if not subs:
                self._subscribers.pop(session_id, None)

        return unsubscribe

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, {}))

    def publish(self, session_id: str, snapshot: Session) -> int:
        """Deliver `snapshot` to every current subscriber; return the delivery count."""
        # Callbacks may unsubscribe while we iterate.
        callbacks = list(self._subscribers.get(session_id, {}).values())
        delivered = 0
        for callback in callbacks:
            try:
                callback(snapshot.model_copy(deep=True))
            except Exception:
                logger.exception("Subscriber for session %s failed; skipping it", session_id)
                continue
            delivered += 1
        return delivered

    def close(self, session_id: str) -> None:
        """Drop every subscriber of `session_id` (used after the session ends)."""
        self._subscribers.pop(session_id, None)

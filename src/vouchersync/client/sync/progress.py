"""Publish/subscribe channel for sync progress."""

from __future__ import annotations

import logging
import threading

from vouchersync.client.sync.types import ProgressCallback, ProgressEvent, Unsubscribe

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Broadcasts progress events to explicitly attached subscribers.

    The latest event is remembered while a sync runs so that a subscriber
    attaching mid-sync is brought up to date immediately.
    """

    def __init__(self) -> None:
        self._subscribers: list[ProgressCallback] = []
        self._latest: ProgressEvent | None = None
        self._lock = threading.Lock()

    @property
    def latest(self) -> ProgressEvent | None:
        """Most recent event, or None when idle."""
        return self._latest

    def subscribe(self, callback: ProgressCallback) -> Unsubscribe:
        """Attach a subscriber.

        Args:
            callback: Called with every event, from the publishing thread.

        Returns:
            A function detaching the subscriber.
        """
        with self._lock:
            self._subscribers.append(callback)
            latest = self._latest
        if latest is not None:
            self._deliver(callback, latest)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: ProgressCallback) -> None:
        """Detach a subscriber (no-op if not attached)."""
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: ProgressEvent) -> None:
        """Send an event to every subscriber."""
        with self._lock:
            self._latest = event
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._deliver(callback, event)

    def clear(self) -> None:
        """Forget the latest event once no sync is running."""
        with self._lock:
            self._latest = None

    @property
    def subscriber_count(self) -> int:
        """Number of attached subscribers."""
        with self._lock:
            return len(self._subscribers)

    @staticmethod
    def _deliver(callback: ProgressCallback, event: ProgressEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("Error in sync progress subscriber")

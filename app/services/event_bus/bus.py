"""
In-process event bus used to announce import lifecycle and health events.

Subscribers are awaited one after another in subscription order, so a
publisher that awaits ``publish`` knows every subscriber has seen the event
before it continues.
"""
import asyncio
import inspect
import logging
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from datetime import datetime, timezone

from app.services.event_bus.events import EventType

logger = logging.getLogger("fleetsync.eventbus")


class EventBus:
    """
    Publish/subscribe hub keyed by event type.

    Keeps a short history of published events and of failed deliveries per
    subscriber for diagnostics.
    """

    def __init__(self, max_history: int = 100):
        self._subscribers: Dict[str, List[Tuple[str, Callable]]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self._max_history = max_history
        self._event_history: Deque[Dict[str, Any]] = deque(maxlen=max_history)
        self._failed_deliveries: Dict[str, Deque[Dict[str, Any]]] = {}

    async def initialize(self) -> None:
        """Initialize the event bus."""
        if self._initialized:
            return
        logger.info("Initializing event bus")
        self._initialized = True

    async def shutdown(self) -> None:
        """Drop all subscribers."""
        logger.info("Shutting down event bus")
        self._initialized = False
        async with self._lock:
            self._subscribers.clear()

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> bool:
        """
        Publish an event to subscribers.

        Args:
            event_type: Type of event
            data: Event payload; a copy is enriched with event metadata

        Returns:
            bool: True if every subscriber handled the event
        """
        key = EventType(event_type).value

        async with self._lock:
            subscribers = list(self._subscribers.get(key, []))

        payload = dict(data)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        payload["event_type"] = key
        payload["event_id"] = str(uuid.uuid4())

        self._event_history.append({
            "event_type": key,
            "data": payload,
            "subscribers": [sid for sid, _ in subscribers],
        })

        if not subscribers:
            logger.debug(f"No subscribers for event: {key}")
            return True

        logger.debug(f"Publishing event {key} to {len(subscribers)} subscribers")

        all_successful = True
        for subscriber_id, callback in subscribers:
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                logger.warning(f"Subscriber {subscriber_id} was cancelled during event {key}")
                raise
            except Exception as e:
                logger.error(f"Error in subscriber {subscriber_id} for {key}: {e}", exc_info=True)
                failures = self._failed_deliveries.setdefault(
                    subscriber_id, deque(maxlen=self._max_history)
                )
                failures.append({
                    "event_type": key,
                    "event_id": payload["event_id"],
                    "error": str(e),
                    "timestamp": datetime.now(timezone.utc).isoformat()
                })
                all_successful = False

        return all_successful

    async def subscribe(
        self,
        event_type: EventType,
        callback: Callable,
        subscriber_id: Optional[str] = None
    ) -> str:
        """
        Subscribe to an event type. Re-subscribing an id replaces its callback.

        Returns:
            str: Subscriber ID
        """
        key = EventType(event_type).value
        if subscriber_id is None:
            subscriber_id = f"{getattr(callback, '__name__', 'subscriber')}_{str(uuid.uuid4())[:8]}"

        async with self._lock:
            entries = [
                (sid, cb) for sid, cb in self._subscribers.get(key, []) if sid != subscriber_id
            ]
            entries.append((subscriber_id, callback))
            self._subscribers[key] = entries

        logger.info(f"Subscribed to {key}: {subscriber_id}")
        return subscriber_id

    async def unsubscribe(self, event_type: EventType, subscriber_id: str) -> bool:
        """
        Unsubscribe from an event type.

        Returns:
            bool: True if unsubscribed, False if not found
        """
        key = EventType(event_type).value
        async with self._lock:
            entries = self._subscribers.get(key, [])
            remaining = [(sid, cb) for sid, cb in entries if sid != subscriber_id]
            if len(remaining) == len(entries):
                return False
            self._subscribers[key] = remaining

        self._failed_deliveries.pop(subscriber_id, None)
        logger.info(f"Unsubscribed from {key}: {subscriber_id}")
        return True

    def get_subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """Number of subscribers for one event type, or for all of them."""
        if event_type is not None:
            return len(self._subscribers.get(EventType(event_type).value, []))
        return sum(len(entries) for entries in self._subscribers.values())

    def get_event_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent published events, oldest first."""
        return list(self._event_history)[-limit:]

    def get_failed_deliveries(self, subscriber_id: str) -> List[Dict[str, Any]]:
        """Failed deliveries recorded for a subscriber."""
        return list(self._failed_deliveries.get(subscriber_id, []))


# Singleton instance
_event_bus = EventBus()

def get_event_bus() -> EventBus:
    """Get the singleton event bus instance."""
    return _event_bus

"""
In-memory fan-out of state change events.

Every mutation of the aggregation views appends one event here. Readers (the
SSE pump, tests) poll with events_since(after_id) and never see the views
themselves, only the ids and small payloads describing what changed.
"""
import logging
from collections import deque
from datetime import datetime, timezone, timedelta
from typing import Optional

from mqttwatch.core.models import StateEvent

logger = logging.getLogger(__name__)


class EventFeed:
    def __init__(self, max_events: int = 1000) -> None:
        self._events: deque[StateEvent] = deque(maxlen=max_events)
        self._last_id = 0

    @property
    def last_id(self) -> int:
        return self._last_id

    def emit(self, event_type: str, topic: Optional[str], payload: dict) -> StateEvent:
        self._last_id += 1
        event = StateEvent(
            id=self._last_id,
            event_type=event_type,
            topic=topic,
            payload=payload,
            created_at=datetime.now(timezone.utc),
        )
        self._events.append(event)
        return event

    def events_since(self, after_id: int = 0, limit: Optional[int] = 50) -> list[StateEvent]:
        """Events newer than `after_id`, oldest first. `limit=None` returns all of them."""
        out: list[StateEvent] = []
        for event in self._events:
            if event.id > after_id:
                out.append(event)
                if limit is not None and len(out) >= limit:
                    break
        return out

    def missed_since(self, after_id: int) -> int:
        """Number of events newer than `after_id` that have already left the buffer."""
        first_buffered = self._events[0].id if self._events else self._last_id + 1
        return max(0, first_buffered - after_id - 1)

    def delete_old(self, max_age_seconds: int = 600) -> int:
        """Prune events older than max_age_seconds to keep the buffer small."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        deleted = 0
        while self._events and self._events[0].created_at < cutoff:
            self._events.popleft()
            deleted += 1
        if deleted > 0:
            logger.debug(f"Pruned {deleted} old events.")
        return deleted

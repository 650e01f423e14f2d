"""
Latest-message-per-topic cache.

Holds exactly one MessageRecord per topic: the newest one. record() hands
back the record it replaced so callers can compare the two.
"""
from typing import Optional

from mqttwatch.core.models import MessageRecord


class HistoryCache:
    def __init__(self) -> None:
        self._latest: dict[str, MessageRecord] = {}

    def __len__(self) -> int:
        return len(self._latest)

    def __contains__(self, topic: str) -> bool:
        return topic in self._latest

    def record(self, message: MessageRecord) -> Optional[MessageRecord]:
        previous = self._latest.get(message.topic)
        self._latest[message.topic] = message
        return previous

    def get(self, topic: str) -> Optional[MessageRecord]:
        return self._latest.get(topic)

    def clear(self) -> None:
        self._latest.clear()

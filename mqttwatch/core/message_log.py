"""
Newest-first log of received messages with a live search filter.

Unlike the topic tree and the history cache, the log keeps every message.
The search predicate is re-evaluated over the whole log on each read; the
body preview it matches against is computed once, when the entry is built.
"""
import logging
from collections import deque
from typing import Iterator, Optional

from mqttwatch.core.models import LogEntry

logger = logging.getLogger(__name__)

ELLIPSIS = "..."


def make_preview(body_text: str, limit: int = 100) -> str:
    """First `limit` characters of the body, with an ellipsis if truncated."""
    if len(body_text) > limit:
        return body_text[:limit] + ELLIPSIS
    return body_text


class MessageLog:
    def __init__(self, max_entries: int = 0) -> None:
        # 0 = unbounded
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque()
        self._search_text = ""
        self._count = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self._entries)

    @property
    def search_text(self) -> str:
        return self._search_text

    @property
    def count(self) -> int:
        """Messages received since the last clear (not reduced by max_entries)."""
        return self._count

    def push(self, entry: LogEntry) -> None:
        self._entries.appendleft(entry)
        self._count += 1
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                dropped = self._entries.pop()
                logger.debug(f"Message log full, dropped seq={dropped.seq}")

    def set_search(self, text: str) -> None:
        self._search_text = (text or "").lower()

    def matches(self, entry: LogEntry, search_text: Optional[str] = None) -> bool:
        needle = self._search_text if search_text is None else search_text.lower()
        if not needle:
            return True
        return needle in entry.record.topic.lower() or needle in entry.preview.lower()

    def filtered(self, search_text: Optional[str] = None) -> list[LogEntry]:
        """Entries matching the current search (or an explicit one), newest first."""
        return [e for e in self._entries if self.matches(e, search_text)]

    def get(self, seq: int) -> Optional[LogEntry]:
        for entry in self._entries:
            if entry.seq == seq:
                return entry
        return None

    def clear(self) -> None:
        self._entries.clear()
        self._count = 0

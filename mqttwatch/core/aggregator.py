"""
Telemetry aggregator: the subscription context that owns the derived views.

One arrival fans out, always in this order, to:
  1. the topic tree        (unconditionally)
  2. the series store      (only when a number can be extracted)
  3. the history cache     (unconditionally; the replaced record is kept on the log entry)
  4. the message log       (unconditionally)
and then emits state change events. The line diff is not computed here: it is
built on demand by detail() when a message is opened.

All methods run on the event loop thread. The session adapter guarantees
on_message() is never re-entered, so the views need no locking.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from mqttwatch import config
from mqttwatch.core.diff import message_detail
from mqttwatch.core.events import EventFeed
from mqttwatch.core.extractor import extract_numeric
from mqttwatch.core.history import HistoryCache
from mqttwatch.core.message_log import MessageLog, make_preview
from mqttwatch.core.models import LogEntry, MessageDetail, MessageRecord
from mqttwatch.core.series import SeriesStore
from mqttwatch.core.topic_tree import Publisher, TopicTree

logger = logging.getLogger(__name__)


def _time_label() -> str:
    return datetime.now().strftime("%H:%M:%S")


class TelemetryAggregator:
    def __init__(
        self,
        series_capacity: Optional[int] = None,
        preview_length: Optional[int] = None,
        log_limit: Optional[int] = None,
        event_buffer: Optional[int] = None,
    ) -> None:
        self.preview_length = config.PREVIEW_LENGTH if preview_length is None else preview_length
        self.tree = TopicTree()
        self.series = SeriesStore(config.SERIES_CAPACITY if series_capacity is None else series_capacity)
        self.history = HistoryCache()
        self.log = MessageLog(config.MESSAGE_LOG_LIMIT if log_limit is None else log_limit)
        self.events = EventFeed(config.EVENT_BUFFER_SIZE if event_buffer is None else event_buffer)
        self._seq = 0

    @property
    def last_seq(self) -> int:
        return self._seq

    # ─────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────

    def on_message(self, topic: str, body: bytes, qos: int = 0, retained: bool = False,
                   timestamp: Optional[float] = None) -> LogEntry:
        """Ingest one message from the session. Returns the log entry created for it."""
        record = MessageRecord(
            topic=topic,
            body=bytes(body),
            qos=int(qos),
            retained=bool(retained),
            received_at=_time_label(),
        )
        text = record.body_text()
        now = time.time() if timestamp is None else timestamp

        new_topic = self.tree.ingest(topic, text)

        value = extract_numeric(text)
        sample = None
        if value is not None:
            sample, _ = self.series.append(topic, value, now)

        previous = self.history.record(record)

        self._seq += 1
        entry = LogEntry(
            seq=self._seq,
            record=record,
            preview=make_preview(text, self.preview_length),
            previous=previous,
        )
        self.log.push(entry)

        if new_topic:
            self.events.emit("topic.new", topic, {"topic": topic})
        if sample is not None:
            self.events.emit("series.sample", topic, {
                "topic": topic, "timestamp": sample.timestamp, "value": sample.value,
            })
        self.events.emit("msg.new", topic, entry.to_dict())
        logger.debug(f"Message ingested: seq={entry.seq} topic='{topic}' qos={qos} retained={retained}")
        return entry

    # ─────────────────────────────────────────────
    # Read side
    # ─────────────────────────────────────────────

    def detail(self, seq: int) -> Optional[MessageDetail]:
        entry = self.log.get(seq)
        if entry is None:
            return None
        return message_detail(entry)

    def messages(self, search: Optional[str] = None, limit: Optional[int] = None) -> list[LogEntry]:
        """Filtered log, newest first. `search` overrides the stored search text for this read only."""
        entries = self.log.filtered(search)
        return entries[:limit] if limit else entries

    def stats(self) -> dict:
        return {
            "message_count": self.log.count,
            "log_size": len(self.log),
            "topic_nodes": self.tree.node_count,
            "topics": self.tree.topic_count(),
            "series": len(self.series),
            "last_seq": self._seq,
        }

    # ─────────────────────────────────────────────
    # Actions
    # ─────────────────────────────────────────────

    def set_search(self, text: str) -> None:
        self.log.set_search(text)

    def clear_messages(self) -> None:
        self.log.clear()
        self.events.emit("log.cleared", None, {})
        logger.info("Message log cleared")

    def clear_series(self, topic: Optional[str] = None) -> bool:
        ok = self.series.clear(topic)
        if ok:
            self.events.emit("series.cleared", topic, {"topic": topic})
        return ok

    async def clear_retained(self, topic: str, publisher: Optional[Publisher]) -> bool:
        ok = await self.tree.clear_retained(topic, publisher)
        if ok:
            self.events.emit("retained.cleared", topic, {"topic": topic})
        return ok

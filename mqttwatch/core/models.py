"""
Data models (dataclasses) for MQTTWatch.
These are plain Python objects shared by the aggregation core, the session
adapter and the HTTP layer.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


VALID_QOS = (0, 1, 2)


@dataclass
class TopicNode:
    segment_name: str
    full_path: str              # '/'-joined path from the root, stable identity key
    last_payload: Optional[str] = None   # None when the node is only an ancestor
    children: list["TopicNode"] = field(default_factory=list)

    def find_child(self, name: str) -> Optional["TopicNode"]:
        for child in self.children:
            if child.segment_name == name:
                return child
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.segment_name,
            "full_path": self.full_path,
            "payload": self.last_payload,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class SeriesSample:
    timestamp: float     # seconds since epoch
    value: float


@dataclass(frozen=True)
class MessageRecord:
    topic: str
    body: bytes
    qos: int             # 0 | 1 | 2
    retained: bool
    received_at: str     # local time label, e.g. "14:03:27"

    def __post_init__(self):
        if self.qos not in VALID_QOS:
            raise ValueError(f"Invalid QoS {self.qos!r}. Must be one of {VALID_QOS}")

    @property
    def qos_label(self) -> str:
        return f"QoS {self.qos}"

    def body_text(self) -> str:
        # Invalid UTF-8 is replaced, never fatal
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class LogEntry:
    seq: int                               # session-wide arrival counter
    record: MessageRecord
    preview: str                           # bounded body preview, computed once
    previous: Optional[MessageRecord]      # prior message on the same topic, if any

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "topic": self.record.topic,
            "preview": self.preview,
            "qos": self.record.qos,
            "qos_label": self.record.qos_label,
            "retained": self.record.retained,
            "received_at": self.record.received_at,
            "has_previous": self.previous is not None,
        }


@dataclass(frozen=True)
class ChartRange:
    """Plotting bounds for one series snapshot."""
    min_value: float
    max_value: float
    value_range: float   # 1.0 when the values collapse to a single level
    min_time: float
    max_time: float
    time_range: float    # 1.0 when all samples share a timestamp
    current: float

    def to_dict(self) -> dict:
        return {
            "min_value": self.min_value,
            "max_value": self.max_value,
            "value_range": self.value_range,
            "min_time": self.min_time,
            "max_time": self.max_time,
            "time_range": self.time_range,
            "current": self.current,
        }


@dataclass(frozen=True)
class MessageDetail:
    entry: LogEntry
    formatted_body: str
    diff_text: str
    has_previous: bool

    def to_dict(self) -> dict:
        data = self.entry.to_dict()
        data.update({
            "body": self.formatted_body,
            "diff": self.diff_text,
            "has_previous": self.has_previous,
        })
        return data


@dataclass
class StateEvent:
    """
    Notification emitted after every update of the aggregation views.
    Buffered in memory and pulled by the SSE pump via events_since().
    """
    id: int
    event_type: str      # msg.new | topic.new | series.sample | log.cleared | series.cleared | retained.cleared | session.state
    topic: Optional[str]
    payload: dict[str, Any]
    created_at: datetime

"""
Shared fixtures for the MQTTWatch unit tests.

No broker is needed: messages are fed straight into the aggregator the way the
session adapter would deliver them, and outbound publishes are captured by a
recording publisher.
"""
import pytest

from mqttwatch.core.aggregator import TelemetryAggregator


class RecordingPublisher:
    """Stands in for the broker session; remembers every publish call."""

    def __init__(self):
        self.published = []

    async def publish(self, topic, payload, qos=0, retain=False):
        self.published.append({"topic": topic, "payload": payload, "qos": qos, "retain": retain})


@pytest.fixture
def aggregator():
    """Fresh aggregator with small, explicit limits (independent of env config)."""
    return TelemetryAggregator(series_capacity=5, preview_length=100, log_limit=0, event_buffer=100)


@pytest.fixture
def publisher():
    return RecordingPublisher()

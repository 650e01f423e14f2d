"""
Subscription context: one broker session feeding one aggregator.

Module-level singleton accessors mirror the shared-connection pattern used by
the HTTP layer: get_subscription() lazily creates the context,
close_subscription() disconnects and drops the context at shutdown.
"""
import asyncio
import logging
from typing import Any, Optional

from mqttwatch import config
from mqttwatch.core.aggregator import TelemetryAggregator
from mqttwatch.session.client import MQTTSession, SessionError, SessionNotConnected, parse_qos

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, aggregator: Optional[TelemetryAggregator] = None) -> None:
        self.aggregator = aggregator or TelemetryAggregator()
        self.session: Optional[MQTTSession] = None
        self.topics: list[tuple[str, int]] = []

    @property
    def state(self) -> str:
        return self.session.state if self.session else "disconnected"

    async def connect(
        self,
        url: str,
        version: Any = "3",
        username: str = "",
        password: str = "",
        keepalive: int = 30,
    ) -> MQTTSession:
        """
        Open a broker session whose messages feed this context's aggregator.

        The new session is built, and its URL validated, before the current
        one is closed; a bad URL leaves the existing connection alone.
        """
        session = MQTTSession(
            url,
            on_message=self.aggregator.on_message,
            version=version,
            username=username,
            password=password,
            keepalive=keepalive,
            on_state=self._on_session_state,
        )
        await self.close()
        await session.connect()
        self.session = session
        return session

    async def subscribe(self, topic: str, qos: Any = 0) -> None:
        if self.session is None:
            raise SessionNotConnected("subscribe")
        qos = parse_qos(qos)
        await self.session.subscribe(topic, qos)
        self.topics.append((topic, qos))

    async def clear_retained(self, topic: str) -> bool:
        """
        Publish an empty retained message at `topic`. Returns False, with a
        warning logged, when the topic is not in the tree; that check does
        not need a live session.
        """
        if self.session is None and self.aggregator.tree.find(topic) is not None:
            raise SessionNotConnected("clear retained message")
        return await self.aggregator.clear_retained(topic, self.session)

    async def close(self) -> None:
        if self.session is not None:
            await self.session.disconnect()
            self.session = None
            self.topics = []

    def _on_session_state(self, state: str) -> None:
        self.aggregator.events.emit("session.state", None, {"state": state})


_subscription: Optional[Subscription] = None
_lock = asyncio.Lock()


async def get_subscription() -> Subscription:
    """Return the shared subscription context, connecting at startup if configured."""
    global _subscription
    if _subscription is None:
        async with _lock:
            if _subscription is None:
                sub = Subscription()
                if config.BROKER_URL:
                    try:
                        await sub.connect(
                            config.BROKER_URL,
                            version=config.MQTT_VERSION,
                            username=config.MQTT_USERNAME,
                            password=config.MQTT_PASSWORD,
                            keepalive=config.MQTT_KEEPALIVE,
                        )
                        await sub.subscribe(config.SUBSCRIBE_TOPIC, config.SUBSCRIBE_QOS)
                    except (SessionError, ValueError) as e:
                        # The read API stays up; a later /api/connect can retry
                        logger.error(f"Startup connection to '{config.BROKER_URL}' failed: {e}")
                _subscription = sub
    return _subscription


async def close_subscription() -> None:
    global _subscription
    if _subscription is not None:
        await _subscription.close()
        _subscription = None
        logger.info("Subscription closed.")

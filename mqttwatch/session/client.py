"""
MQTT session adapter built on paho-mqtt (v2 callback API).

paho runs its network loop on a background thread. Nothing on that thread
touches aggregation state: every callback is handed to the asyncio loop with
call_soon_threadsafe, so message handlers run one at a time, in arrival
order, on the loop thread.

Connect, subscribe and publish are awaitable and resolve when the broker
acknowledges them (CONNACK, SUBACK, and PUBACK/PUBCOMP or socket write for
QoS 0).
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from mqttwatch.core.models import VALID_QOS

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes, int, bool], Any]
StateHandler = Callable[[str], Any]

DEFAULT_PORTS = {"tcp": 1883, "tls": 8883, "websockets": 80, "websockets-tls": 443}

_SCHEMES = {
    "mqtt": ("tcp", False),
    "tcp": ("tcp", False),
    "mqtts": ("tcp", True),
    "ssl": ("tcp", True),
    "tls": ("tcp", True),
    "ws": ("websockets", False),
    "wss": ("websockets", True),
}


class SessionError(Exception):
    """Raised when the broker rejects or fails a session operation."""

    def __init__(self, message: str, reason_code: Optional[Any] = None) -> None:
        self.reason_code = reason_code
        super().__init__(message if reason_code is None else f"{message} (reason: {reason_code})")


class SessionNotConnected(SessionError):
    """Raised when an operation needs a live broker connection."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation}: not connected to a broker")


@dataclass(frozen=True)
class BrokerAddress:
    host: str
    port: int
    transport: str     # tcp | websockets
    tls: bool
    path: str          # websocket path, "" for tcp


def parse_broker_url(url: str) -> BrokerAddress:
    """
    Parse mqtt://, mqtts://, tcp://, ssl://, ws:// and wss:// URLs.
    A bare "host[:port]" is treated as mqtt://.
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("Broker URL is empty")
    if "://" not in url:
        url = f"mqtt://{url}"
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme not in _SCHEMES:
        raise ValueError(f"Unsupported broker URL scheme '{scheme}'. Must be one of {sorted(_SCHEMES)}")
    if not parsed.hostname:
        raise ValueError(f"Broker URL '{url}' has no host")
    transport, tls = _SCHEMES[scheme]
    if transport == "websockets":
        default_port = DEFAULT_PORTS["websockets-tls" if tls else "websockets"]
        path = parsed.path or "/mqtt"
    else:
        default_port = DEFAULT_PORTS["tls" if tls else "tcp"]
        path = ""
    return BrokerAddress(
        host=parsed.hostname,
        port=parsed.port or default_port,
        transport=transport,
        tls=tls,
        path=path,
    )


def parse_mqtt_version(version: Any) -> int:
    value = str(version).strip()
    if value in ("3", "3.1.1", "311"):
        return mqtt.MQTTv311
    if value in ("5", "5.0"):
        return mqtt.MQTTv5
    logger.warning(f"Unknown MQTT version '{version}', defaulting to 3.1.1")
    return mqtt.MQTTv311


def parse_qos(qos: Any) -> int:
    try:
        value = int(str(qos).strip())
    except ValueError:
        value = -1
    if value not in VALID_QOS:
        logger.warning(f"Unknown MQTT QoS '{qos}', defaulting to QoS 0")
        return 0
    return value


def _is_failure(reason_code: Any) -> bool:
    failure = getattr(reason_code, "is_failure", None)
    if failure is not None:
        return bool(failure)
    try:
        return int(reason_code) >= 0x80
    except (TypeError, ValueError):
        return False


class _AckWaiter:
    """
    Matches broker acks (by message id) to awaiting coroutines.

    The ack can arrive on the network thread before the caller has registered
    the mid, so early results are parked until claimed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[int, asyncio.Future] = {}
        self._early: dict[int, Any] = {}

    def wait(self, loop: asyncio.AbstractEventLoop, mid: int) -> asyncio.Future:
        fut = loop.create_future()
        with self._lock:
            if mid in self._early:
                fut.set_result(self._early.pop(mid))
            else:
                self._pending[mid] = fut
        return fut

    def resolve(self, loop: asyncio.AbstractEventLoop, mid: int, result: Any) -> None:
        with self._lock:
            fut = self._pending.pop(mid, None)
            if fut is None:
                self._early[mid] = result
                return
        loop.call_soon_threadsafe(_set_result, fut, result)

    def fail_all(self, loop: asyncio.AbstractEventLoop, exc: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._early.clear()
        for fut in pending:
            loop.call_soon_threadsafe(_set_exception, fut, exc)


def _set_result(fut: asyncio.Future, result: Any) -> None:
    if not fut.done():
        fut.set_result(result)


def _set_exception(fut: asyncio.Future, exc: Exception) -> None:
    if not fut.done():
        fut.set_exception(exc)


class MQTTSession:
    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        version: Any = "3",
        username: str = "",
        password: str = "",
        keepalive: int = 30,
        client_id: str = "",
        on_state: Optional[StateHandler] = None,
    ) -> None:
        self.address = parse_broker_url(url)
        self.url = url
        self.protocol = parse_mqtt_version(version)
        self.keepalive = keepalive
        self.state = "disconnected"     # disconnected | connecting | connected
        self._on_message = on_message
        self._on_state = on_state
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._subacks = _AckWaiter()
        self._pubacks = _AckWaiter()

        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=self.protocol,
            transport=self.address.transport,
        )
        if self.address.transport == "websockets":
            self.client.ws_set_options(path=self.address.path)
        if self.address.tls:
            self.client.tls_set()
        if username:
            self.client.username_pw_set(username, password or None)

        self.client.on_connect = self._handle_connect
        self.client.on_disconnect = self._handle_disconnect
        self.client.on_subscribe = self._handle_subscribe
        self.client.on_publish = self._handle_publish
        self.client.on_message = self._handle_message

    @property
    def is_connected(self) -> bool:
        return self.state == "connected"

    # ─────────────────────────────────────────────
    # Awaitable operations (event loop thread)
    # ─────────────────────────────────────────────

    async def connect(self, timeout: float = 10.0) -> None:
        self._loop = asyncio.get_running_loop()
        self._connect_future = self._loop.create_future()
        self._set_state("connecting")
        try:
            self.client.connect_async(self.address.host, self.address.port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            self._set_state("disconnected")
            raise SessionError(f"Unable to connect to {self.address.host}:{self.address.port}: {e}") from e
        self.client.loop_start()
        try:
            await asyncio.wait_for(self._connect_future, timeout)
        except asyncio.TimeoutError:
            await self._stop_loop()
            self._set_state("disconnected")
            raise SessionError(f"Timed out connecting to {self.address.host}:{self.address.port}")
        except SessionError:
            await self._stop_loop()
            raise
        logger.info(f"Connected to broker {self.address.host}:{self.address.port}")

    async def subscribe(self, topic: str, qos: Any = 0) -> None:
        if not self.is_connected:
            raise SessionNotConnected("subscribe")
        qos = parse_qos(qos)
        result, mid = self.client.subscribe(topic, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SessionError(f"Subscribe to '{topic}' failed", mqtt.error_string(result))
        reason_codes = await self._subacks.wait(self._loop, mid)
        failed = [rc for rc in reason_codes if _is_failure(rc)]
        if failed:
            raise SessionError(f"Broker rejected subscription to '{topic}'", failed[0])
        logger.info(f"Subscribed to '{topic}' (QoS {qos})")

    async def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> None:
        if not self.is_connected:
            raise SessionNotConnected("publish")
        info = self.client.publish(topic, payload, qos=parse_qos(qos), retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise SessionError(f"Publish to '{topic}' failed", mqtt.error_string(info.rc))
        reason_code = await self._pubacks.wait(self._loop, info.mid)
        if reason_code is not None and _is_failure(reason_code):
            raise SessionError(f"Broker rejected publish to '{topic}'", reason_code)
        logger.debug(f"Published {len(payload)} bytes to '{topic}' (retain={retain})")

    async def disconnect(self) -> None:
        """Stop delivery. State already ingested by the handler is kept."""
        if self.state == "disconnected":
            return
        self.client.disconnect()
        await self._stop_loop()
        self._set_state("disconnected")
        logger.info(f"Disconnected from broker {self.address.host}:{self.address.port}")

    async def _stop_loop(self) -> None:
        # loop_stop() joins the network thread
        await asyncio.get_running_loop().run_in_executor(None, self.client.loop_stop)

    # ─────────────────────────────────────────────
    # paho callbacks (network thread)
    # ─────────────────────────────────────────────

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None):
        if self._loop is None:
            return
        if _is_failure(reason_code):
            logger.error(f"Broker refused connection: {reason_code}")
            exc = SessionError("Broker refused connection", reason_code)
            self._loop.call_soon_threadsafe(self._connect_failed, exc)
            return
        self._loop.call_soon_threadsafe(self._connect_succeeded)

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if self._loop is None:
            return
        if _is_failure(reason_code):
            logger.warning(f"Broker connection lost: {reason_code}")
        self._subacks.fail_all(self._loop, SessionNotConnected("wait for subscription ack"))
        self._pubacks.fail_all(self._loop, SessionNotConnected("wait for publish ack"))
        self._loop.call_soon_threadsafe(self._set_state, "disconnected")

    def _handle_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        if self._loop is not None:
            self._subacks.resolve(self._loop, mid, list(reason_code_list))

    def _handle_publish(self, client, userdata, mid, reason_code=None, properties=None):
        if self._loop is not None:
            self._pubacks.resolve(self._loop, mid, reason_code)

    def _handle_message(self, client, userdata, msg):
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._deliver, msg.topic, msg.payload, msg.qos, msg.retain)

    # ─────────────────────────────────────────────
    # Loop-thread continuations
    # ─────────────────────────────────────────────

    def _connect_succeeded(self) -> None:
        self._set_state("connected")
        if self._connect_future is not None and not self._connect_future.done():
            self._connect_future.set_result(None)

    def _connect_failed(self, exc: SessionError) -> None:
        self._set_state("disconnected")
        if self._connect_future is not None and not self._connect_future.done():
            self._connect_future.set_exception(exc)

    def _deliver(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        try:
            self._on_message(topic, payload, qos, retained)
        except Exception:
            # One bad message must not stop delivery of the next
            logger.exception(f"Message handler failed for topic '{topic}'")

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        self.state = state
        if self._on_state is not None:
            self._on_state(state)

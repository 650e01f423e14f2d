"""
Unit tests for the HTTP layer.

The shared subscription context is replaced with one wrapping a test
aggregator, so the app starts without contacting a broker. Messages are fed
directly into that aggregator.
"""
import pytest
from fastapi.testclient import TestClient

import mqttwatch.session.subscription as subscription_mod
from mqttwatch.core.aggregator import TelemetryAggregator
from mqttwatch.core.events import EventFeed
from mqttwatch.main import _drain_events, app
from mqttwatch.session.subscription import Subscription


class _FakeSession:
    """Connected-looking session that records publishes instead of sending them."""

    def __init__(self):
        self.url = "mqtt://test-broker"
        self.state = "connected"
        self.published = []

    async def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))

    async def subscribe(self, topic, qos=0):
        pass

    async def disconnect(self):
        self.state = "disconnected"


@pytest.fixture
def sub(monkeypatch):
    agg = TelemetryAggregator(series_capacity=5, preview_length=100, log_limit=0, event_buffer=100)
    context = Subscription(agg)
    monkeypatch.setattr(subscription_mod, "_subscription", context)
    return context


@pytest.fixture
def client(sub):
    with TestClient(app) as c:
        yield c


# ─────────────────────────────────────────────
# Snapshots
# ─────────────────────────────────────────────

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "MQTTWatch"}


def test_status_without_session(client, sub):
    sub.aggregator.on_message("a/b", b"1")
    data = client.get("/api/status").json()
    assert data["state"] == "disconnected"
    assert data["broker"] is None
    assert data["message_count"] == 1
    assert data["topic_nodes"] == 2


def test_topic_tree_snapshot(client, sub):
    sub.aggregator.on_message("sensors/room1/temp", b"21.5")
    sub.aggregator.on_message("sensors/room1/humidity", b"40")
    tree = client.get("/api/topics").json()
    assert [n["name"] for n in tree] == ["sensors"]
    room1 = tree[0]["children"][0]
    assert room1["full_path"] == "sensors/room1"
    assert [(c["name"], c["payload"]) for c in room1["children"]] == [("temp", "21.5"), ("humidity", "40")]


def test_messages_newest_first_and_search(client, sub):
    sub.aggregator.on_message("home/temp", b"20")
    sub.aggregator.on_message("home/hum", b"50")
    assert [m["topic"] for m in client.get("/api/messages").json()] == ["home/hum", "home/temp"]
    assert [m["topic"] for m in client.get("/api/messages", params={"search": "TEMP"}).json()] == ["home/temp"]


def test_stored_search(client, sub):
    sub.aggregator.on_message("home/temp", b"20")
    sub.aggregator.on_message("home/hum", b"50")
    r = client.post("/api/messages/search", json={"text": "Hum"})
    assert r.json() == {"ok": True, "search": "hum"}
    assert [m["topic"] for m in client.get("/api/messages").json()] == ["home/hum"]


def test_message_detail_with_diff(client, sub):
    sub.aggregator.on_message("t", b'{"v": 1}')
    entry = sub.aggregator.on_message("t", b'{"v": 2}')
    data = client.get(f"/api/messages/{entry.seq}").json()
    assert data["has_previous"] is True
    assert data["body"] == '{\n  "v": 2\n}'
    assert '+  "v": 2\n' in data["diff"]


def test_message_detail_missing(client):
    assert client.get("/api/messages/42").status_code == 404


def test_history(client, sub):
    sub.aggregator.on_message("dev/1/state", b"on", qos=1, retained=True)
    data = client.get("/api/history/dev/1/state").json()
    assert data["body"] == "on"
    assert data["retained"] is True
    assert client.get("/api/history/dev/2/state").status_code == 404


def test_series(client, sub):
    sub.aggregator.on_message("t/x", b"1", timestamp=10.0)
    sub.aggregator.on_message("t/x", b"3", timestamp=12.0)
    assert client.get("/api/series").json() == ["t/x"]
    data = client.get("/api/series/t/x").json()
    assert [s["value"] for s in data["samples"]] == [1.0, 3.0]
    assert data["range"]["value_range"] == 2.0
    assert data["range"]["current"] == 3.0
    assert client.get("/api/series/nothing").status_code == 404


def test_events_endpoint(client, sub):
    sub.aggregator.on_message("t", b"1")
    events = client.get("/api/events").json()
    assert [e["type"] for e in events] == ["topic.new", "series.sample", "msg.new"]
    after = client.get("/api/events", params={"after_id": events[-1]["id"]}).json()
    assert after == []


class TestSseDrain:
    def test_drains_everything_pending(self):
        feed = EventFeed(max_events=1000)
        for i in range(300):
            feed.emit("msg.new", "t", {"i": i})
        frames, cursor = _drain_events(feed, 0)
        assert len(frames) == 300
        assert cursor == 300
        assert frames[0].startswith("id: 1\nevent: msg.new\ndata: ")
        assert _drain_events(feed, cursor) == ([], 300)

    def test_gap_frame_when_reader_falls_behind(self):
        feed = EventFeed(max_events=3)
        feed.emit("msg.new", "t", {"i": 0})
        frames, cursor = _drain_events(feed, 0)
        assert cursor == 1
        for i in range(1, 6):
            feed.emit("msg.new", "t", {"i": i})
        frames, cursor = _drain_events(feed, cursor)
        assert frames[0].startswith("id: 3\nevent: events.gap\n")
        assert '"missed": 2' in frames[0]
        assert [f.split("\n")[0] for f in frames[1:]] == ["id: 4", "id: 5", "id: 6"]
        assert cursor == 6

    def test_fresh_reader_gets_no_gap(self):
        feed = EventFeed(max_events=2)
        for i in range(5):
            feed.emit("msg.new", "t", {"i": i})
        frames, cursor = _drain_events(feed, 0)
        assert len(frames) == 2
        assert cursor == 5


# ─────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────

def test_clear_messages(client, sub):
    sub.aggregator.on_message("t", b"1")
    assert client.post("/api/messages/clear").json() == {"ok": True}
    assert client.get("/api/messages").json() == []
    # Other views are untouched
    assert client.get("/api/topics").json()[0]["payload"] == "1"


def test_clear_series(client, sub):
    sub.aggregator.on_message("t", b"1")
    assert client.post("/api/series/clear", json={"topic": "t"}).status_code == 200
    assert client.get("/api/series/t").json()["samples"] == []
    assert client.post("/api/series/clear", json={"topic": "zzz"}).status_code == 404


def test_clear_retained_requires_session(client, sub):
    sub.aggregator.on_message("dev/state", b"on", retained=True)
    r = client.post("/api/topics/clear-retained", json={"topic": "dev/state"})
    assert r.status_code == 409


def test_clear_retained_publishes(client, sub):
    session = _FakeSession()
    sub.session = session
    sub.aggregator.on_message("dev/state", b"on", retained=True)
    r = client.post("/api/topics/clear-retained", json={"topic": "dev/state"})
    assert r.json() == {"ok": True, "topic": "dev/state"}
    assert session.published == [("dev/state", b"", 0, True)]


def test_clear_retained_unknown_topic_is_a_warning(client, sub):
    session = _FakeSession()
    sub.session = session
    r = client.post("/api/topics/clear-retained", json={"topic": "nope"})
    assert r.status_code == 200
    assert r.json() == {"ok": False, "topic": "nope", "warning": "Topic 'nope' is not in the tree"}
    assert session.published == []


def test_clear_retained_unknown_topic_without_session(client):
    r = client.post("/api/topics/clear-retained", json={"topic": "nope"})
    assert r.status_code == 200
    assert r.json()["ok"] is False


def test_subscribe_requires_session(client):
    assert client.post("/api/subscribe", json={"topic": "#"}).status_code == 409


def test_subscribe_rejects_bad_qos(client):
    assert client.post("/api/subscribe", json={"topic": "#", "qos": 3}).status_code == 422


def test_subscribe_records_topic(client, sub):
    sub.session = _FakeSession()
    r = client.post("/api/subscribe", json={"topic": "sensors/#", "qos": 1})
    assert r.json() == {"ok": True, "topic": "sensors/#", "qos": 1}
    assert client.get("/api/status").json()["subscriptions"] == [{"topic": "sensors/#", "qos": 1}]


def test_connect_rejects_bad_url(client):
    r = client.post("/api/connect", json={"url": "http://nope"})
    assert r.status_code == 400


def test_bad_url_keeps_current_connection(client, sub):
    session = _FakeSession()
    sub.session = session
    assert client.post("/api/connect", json={"url": "http://nope"}).status_code == 400
    assert sub.session is session
    assert session.state == "connected"
    assert client.get("/api/status").json()["state"] == "connected"


def test_disconnect_keeps_views(client, sub):
    sub.session = _FakeSession()
    sub.aggregator.on_message("t", b"1")
    assert client.post("/api/disconnect").json() == {"ok": True, "state": "disconnected"}
    assert len(client.get("/api/messages").json()) == 1


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

def test_get_settings_hides_password(client):
    data = client.get("/api/settings").json()
    assert isinstance(data["PORT"], int)
    assert data["SUBSCRIBE_TOPIC"]
    assert "MQTT_PASSWORD" not in data


def test_put_settings_writes_config_file(client, monkeypatch, tmp_path):
    import json
    import mqttwatch.config as config_mod
    monkeypatch.setattr(config_mod, "BASE_DIR", tmp_path)
    r = client.put("/api/settings", json={"SERIES_CAPACITY": 50, "BROKER_URL": "mqtt://h"})
    assert r.json() == {"ok": True, "saved": ["BROKER_URL", "SERIES_CAPACITY"], "restart_required": True}
    saved = json.loads((tmp_path / "data" / "config.json").read_text(encoding="utf-8"))
    assert saved == {"SERIES_CAPACITY": 50, "BROKER_URL": "mqtt://h"}


def test_put_settings_validates(client, monkeypatch, tmp_path):
    import mqttwatch.config as config_mod
    monkeypatch.setattr(config_mod, "BASE_DIR", tmp_path)
    assert client.put("/api/settings", json={"SERIES_CAPACITY": 0}).status_code == 422
    assert not (tmp_path / "data").exists()

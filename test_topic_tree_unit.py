"""
Unit tests for the topic hierarchy index and the clear-retained action.
"""
import logging

import pytest

from mqttwatch.core.topic_tree import TopicTree


def _names(nodes):
    return [n.segment_name for n in nodes]


# ─────────────────────────────────────────────
# Ingestion
# ─────────────────────────────────────────────

class TestIngest:
    def test_builds_path_with_full_paths(self):
        tree = TopicTree()
        tree.ingest("sensors/room1/temp", "21.5")
        sensors = tree.root.children[0]
        room1 = sensors.children[0]
        temp = room1.children[0]
        assert (sensors.full_path, room1.full_path, temp.full_path) == (
            "sensors", "sensors/room1", "sensors/room1/temp",
        )
        assert temp.last_payload == "21.5"

    def test_intermediate_nodes_have_no_payload(self):
        tree = TopicTree()
        tree.ingest("a/b/c", "x")
        assert tree.find("a").last_payload is None
        assert tree.find("a/b").last_payload is None

    def test_same_topic_twice_no_duplicates(self):
        tree = TopicTree()
        assert tree.ingest("a/b", "1") is True
        assert tree.ingest("a/b", "2") is False
        assert _names(tree.root.children) == ["a"]
        assert _names(tree.find("a").children) == ["b"]
        assert tree.find("a/b").last_payload == "2"
        assert tree.node_count == 2

    def test_siblings_keep_first_seen_order(self):
        tree = TopicTree()
        for topic in ("home/z", "home/a", "home/m", "home/a"):
            tree.ingest(topic, "")
        assert _names(tree.find("home").children) == ["z", "a", "m"]

    def test_ancestor_can_become_publish_target(self):
        tree = TopicTree()
        tree.ingest("a/b", "deep")
        tree.ingest("a", "top")
        assert tree.find("a").last_payload == "top"
        assert tree.find("a/b").last_payload == "deep"
        assert tree.topic_count() == 2

    def test_end_to_end_two_leaves(self):
        tree = TopicTree()
        tree.ingest("sensors/room1/temp", "21.5")
        tree.ingest("sensors/room1/humidity", "40")
        assert _names(tree.root.children) == ["sensors"]
        sensors = tree.root.children[0]
        assert _names(sensors.children) == ["room1"]
        room1 = sensors.children[0]
        assert _names(room1.children) == ["temp", "humidity"]
        temp, humidity = room1.children
        assert temp.children == [] and humidity.children == []
        assert temp.last_payload == "21.5"
        assert humidity.last_payload == "40"


class TestEmptySegments:
    def test_consecutive_delimiters(self):
        tree = TopicTree()
        tree.ingest("a//b", "v")
        a = tree.find("a")
        assert _names(a.children) == [""]
        empty = a.children[0]
        assert empty.full_path == "a/"
        assert empty.children[0].full_path == "a//b"
        assert tree.find("a//b").last_payload == "v"

    def test_leading_slash(self):
        tree = TopicTree()
        tree.ingest("/a", "v")
        assert _names(tree.root.children) == [""]
        assert tree.find("/a").full_path == "/a"

    def test_trailing_slash(self):
        tree = TopicTree()
        tree.ingest("a/", "v")
        assert tree.find("a/").last_payload == "v"
        assert tree.find("a").last_payload is None

    def test_empty_topic(self):
        tree = TopicTree()
        tree.ingest("", "v")
        assert _names(tree.root.children) == [""]
        assert tree.find("").last_payload == "v"


class TestFindAndSnapshot:
    def test_find_missing(self):
        tree = TopicTree()
        tree.ingest("a/b", "1")
        assert tree.find("a/c") is None
        assert tree.find("x") is None

    def test_snapshot_is_plain_data(self):
        tree = TopicTree()
        tree.ingest("a/b", "1")
        snap = tree.snapshot()
        assert snap == [{
            "name": "a", "full_path": "a", "payload": None,
            "children": [{"name": "b", "full_path": "a/b", "payload": "1", "children": []}],
        }]
        snap[0]["children"].clear()
        assert tree.find("a/b") is not None


# ─────────────────────────────────────────────
# Clear retained
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_clear_retained_publishes_empty_retained(publisher):
    tree = TopicTree()
    tree.ingest("sensors/room1/temp", "21.5")
    ok = await tree.clear_retained("sensors/room1/temp", publisher)
    assert ok is True
    assert publisher.published == [
        {"topic": "sensors/room1/temp", "payload": b"", "qos": 0, "retain": True},
    ]
    # The index only identifies the target; it does not change itself
    assert tree.find("sensors/room1/temp").last_payload == "21.5"


@pytest.mark.asyncio
async def test_clear_retained_unknown_topic_is_noop(publisher, caplog):
    tree = TopicTree()
    tree.ingest("a/b", "1")
    with caplog.at_level(logging.WARNING, logger="mqttwatch.core.topic_tree"):
        ok = await tree.clear_retained("a/zzz", publisher)
    assert ok is False
    assert publisher.published == []
    assert "a/zzz" in caplog.text


@pytest.mark.asyncio
async def test_clear_retained_on_intermediate_node(publisher):
    tree = TopicTree()
    tree.ingest("a/b", "1")
    assert await tree.clear_retained("a", publisher) is True
    assert publisher.published[0]["topic"] == "a"

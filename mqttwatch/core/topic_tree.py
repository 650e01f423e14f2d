"""
Topic hierarchy index.

An append-only tree keyed by '/'-separated topic segments. Nodes are created
the first time a message passes through them and are never removed; each node
remembers the latest payload published exactly at its path.

Sibling order is first-seen order, which is also display order. Lookups scan
siblings linearly since fan-out per level is small for real topic namespaces.
Empty segments ("a//b", "/a", "") are ordinary zero-length segment names.
"""
import logging
from typing import Optional, Protocol

from mqttwatch.core.models import TopicNode

logger = logging.getLogger(__name__)

TOPIC_SEPARATOR = "/"


class Publisher(Protocol):
    async def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> None:
        ...


class TopicTree:
    def __init__(self) -> None:
        # Synthetic root: never rendered, holds the top-level segments
        self.root = TopicNode(segment_name="", full_path="")
        self._node_count = 0

    @property
    def node_count(self) -> int:
        return self._node_count

    def ingest(self, topic: str, payload: str) -> bool:
        """
        Record `payload` as the latest value at `topic`.

        Returns True if at least one new node was created.
        """
        created = False
        current = self.root
        path: list[str] = []
        for segment in topic.split(TOPIC_SEPARATOR):
            path.append(segment)
            child = current.find_child(segment)
            if child is None:
                child = TopicNode(segment_name=segment, full_path=TOPIC_SEPARATOR.join(path))
                current.children.append(child)
                self._node_count += 1
                created = True
            current = child
        current.last_payload = payload
        if created:
            logger.debug(f"Topic tree grew: '{topic}' ({self._node_count} nodes)")
        return created

    def find(self, full_path: str) -> Optional[TopicNode]:
        current = self.root
        for segment in full_path.split(TOPIC_SEPARATOR):
            current = current.find_child(segment)
            if current is None:
                return None
        return current

    def topic_count(self) -> int:
        """Number of nodes that have received a message at their exact path."""
        count = 0
        stack = list(self.root.children)
        while stack:
            node = stack.pop()
            if node.last_payload is not None:
                count += 1
            stack.extend(node.children)
        return count

    def snapshot(self) -> list[dict]:
        return [child.to_dict() for child in self.root.children]

    async def clear_retained(self, full_path: str, publisher: Optional[Publisher]) -> bool:
        """
        Ask the broker to drop the retained message at `full_path`.

        Publishes an empty retained message through `publisher`. The tree is
        left untouched; the broker's echo arrives through ingest() like any
        other message. Unknown paths are a logged no-op and never reach
        `publisher`, which may then be None.
        """
        node = self.find(full_path)
        if node is None:
            logger.warning(f"Clear retained ignored: topic '{full_path}' is not in the tree")
            return False
        await publisher.publish(node.full_path, b"", qos=0, retain=True)
        logger.info(f"Cleared retained message on '{node.full_path}'")
        return True

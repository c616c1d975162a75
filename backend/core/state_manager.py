# backend/core/state_manager.py
import json
import logging
import os
import tempfile
import threading

from pydantic import ValidationError as ModelValidationError

from .models import Node

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Authoritative in-memory record of all nodes.

    Every mutation writes the full record (nodes plus naming counters) to
    ``state_file`` so an operator, or the next manager start, can see it.
    """

    def __init__(self, state_file: str):
        self.state_file = state_file
        self._nodes: dict[str, Node] = {}
        self._counters: dict[str, int] = {}
        self._lock = threading.RLock()

    def list(self) -> list[Node]:
        with self._lock:
            return list(self._nodes.values())

    def get(self, node_id: str) -> Node | None:
        with self._lock:
            return self._nodes.get(node_id)

    def upsert(self, node: Node) -> Node:
        with self._lock:
            self._nodes[node.id] = node
            self.save()
        return node

    def remove(self, node_id: str) -> Node | None:
        with self._lock:
            node = self._nodes.pop(node_id, None)
            if node is not None:
                self.save()
        return node

    def next_name(self, device_type: str) -> str:
        """Next ``<type>-<n>`` name. Counters only ever grow."""
        with self._lock:
            taken = {n.name for n in self._nodes.values()}
            while True:
                self._counters[device_type] = self._counters.get(device_type, 0) + 1
                name = f"{device_type}-{self._counters[device_type]}"
                if name not in taken:
                    return name

    def claim_name(self, device_type: str, requested: str | None = None) -> str:
        """The requested name if it is free, otherwise the next counter name."""
        name = (requested or "").strip()
        with self._lock:
            if name and name not in {n.name for n in self._nodes.values()}:
                return name
            return self.next_name(device_type)

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def save(self) -> None:
        """Atomically write the snapshot file."""
        with self._lock:
            snapshot = {
                "nodes": [n.model_dump(mode="json", by_alias=True) for n in self._nodes.values()],
                "counters": dict(self._counters),
            }
            directory = os.path.dirname(self.state_file) or "."
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".lab_state.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(tmp_path, self.state_file)
            except OSError:
                logger.exception("Could not write snapshot %s", self.state_file)
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)

    def load(self) -> None:
        """Replace the in-memory record with the snapshot on disk, if any."""
        if not os.path.exists(self.state_file):
            return
        try:
            with open(self.state_file) as f:
                snapshot = json.load(f)
            nodes = [Node.model_validate(item) for item in snapshot.get("nodes", [])]
            counters = {str(k): int(v) for k, v in snapshot.get("counters", {}).items()}
        except (OSError, ValueError, TypeError, AttributeError, ModelValidationError) as e:
            logger.error("Ignoring unreadable snapshot %s: %s", self.state_file, e)
            return
        with self._lock:
            self._nodes = {n.id: n for n in nodes}
            self._counters = counters
        logger.info("Loaded %d node(s) from %s", len(nodes), self.state_file)

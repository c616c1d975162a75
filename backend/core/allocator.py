# backend/core/allocator.py
import logging
import threading
from collections.abc import Iterable

from .errors import ResourceExhausted

logger = logging.getLogger(__name__)


class DisplayAllocator:
    """Hands out VNC display slots, lowest free slot first.

    A slot is held from ``allocate`` until ``release``; slots of running
    nodes passed in by the caller are never handed out either.
    """

    def __init__(self, base_port: int = 5900, pool_size: int = 100):
        self.base_port = base_port
        self.pool_size = pool_size
        self._held: dict[str, int] = {}
        self._lock = threading.Lock()

    def port_for(self, slot: int) -> int:
        return self.base_port + slot

    def allocate(self, node_id: str, running_slots: Iterable[int] = ()) -> int:
        with self._lock:
            if node_id in self._held:
                return self._held[node_id]
            used = set(running_slots) | set(self._held.values())
            for slot in range(self.pool_size):
                if slot not in used:
                    self._held[node_id] = slot
                    logger.debug("Allocated display :%d to %s", slot, node_id)
                    return slot
        raise ResourceExhausted(f"No free VNC display among {self.pool_size} slots")

    def adopt(self, node_id: str, slot: int) -> None:
        """Record a slot already in use by a recovered node."""
        with self._lock:
            self._held[node_id] = slot

    def release(self, node_id: str) -> None:
        with self._lock:
            slot = self._held.pop(node_id, None)
        if slot is not None:
            logger.debug("Released display :%d from %s", slot, node_id)

    def held(self) -> dict[str, int]:
        with self._lock:
            return dict(self._held)

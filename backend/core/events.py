"""Lifecycle events published by the orchestrator."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeEvent:
    node_id: str
    name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)


@dataclass(frozen=True)
class NodeStarted(NodeEvent):
    """A node's VM is up and its VNC display is reachable."""
    vnc_port: int = 0


@dataclass(frozen=True)
class NodeStopped(NodeEvent):
    """A node left the running state (stopped, wiped or found dead)."""


@dataclass(frozen=True)
class NodeDeleted(NodeEvent):
    """A node was removed from the registry."""


@dataclass(frozen=True)
class DirectoryLink:
    """Returned by NodeStarted handlers that registered the node for remote access."""
    connection_id: str
    url: str


Handler = Callable[[NodeEvent], Any]


class EventBus:
    """Synchronous publisher; a failing handler never fails the publisher."""

    def __init__(self):
        self._subscribers: dict[type, list[Handler]] = {}

    def subscribe(self, event_type: type[NodeEvent], handler: Handler) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def publish(self, event: NodeEvent) -> list[Any]:
        """Deliver an event and collect the non-None handler results."""
        results = []
        for handler in self._subscribers.get(type(event), []):
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)
                continue
            if result is not None:
                results.append(result)
        return results

    def clear(self) -> None:
        self._subscribers = {}

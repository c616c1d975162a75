# backend/core/models.py
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NodeStatus = Literal["stopped", "running"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Node(BaseModel):
    """A lab node as recorded by the registry and returned by the API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    device_type: str
    overlay_path: str
    status: NodeStatus = "stopped"
    vnc_port: int | None = None
    display_slot: int | None = None
    guacamole_url: str | None = None
    interfaces: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def as_running(self, slot: int, vnc_port: int, guacamole_url: str | None) -> "Node":
        return self.model_copy(update={
            "status": "running",
            "display_slot": slot,
            "vnc_port": vnc_port,
            "guacamole_url": guacamole_url,
        })

    def as_stopped(self) -> "Node":
        return self.model_copy(update={
            "status": "stopped",
            "display_slot": None,
            "vnc_port": None,
            "guacamole_url": None,
        })

# backend/api/models.py
from pydantic import BaseModel, ConfigDict, Field

from core.models import Node


class CreateNodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_type: str = Field(alias="deviceType", min_length=1)
    name: str | None = Field(default=None, max_length=128)


class MessageResponse(BaseModel):
    message: str


class WipeResponse(BaseModel):
    message: str
    node: Node


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str
    nodes: int
    running: int

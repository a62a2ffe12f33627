"""
MODULE OVERVIEW:
The typed data structures shared by the sync client, the dashboard and the
sandbox node, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Server payloads are not stable across deployments, so nothing in here is
validated straight from the wire. The normalizer maps raw frames onto these
canonical shapes first; everything downstream of it only ever sees them.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Peer(BaseModel):
    id: str
    name: str
    reputation: float = 0.5
    location: dict[str, Any] | str | None = None
    addresses: list[str] = Field(default_factory=list)


class Node(BaseModel):
    id: str
    name: str
    status: str = "unknown"
    capacity: dict[str, Any] = Field(default_factory=dict)
    allocatable: dict[str, Any] = Field(default_factory=dict)
    network: dict[str, Any] | None = None
    workloads: dict[str, Any] | None = None
    # Mock-format cpu/memory/disk usage blocks
    metrics: dict[str, Any] = Field(default_factory=dict)


class Workload(BaseModel):
    id: str
    name: str | None = None
    status: str = "pending"
    progress: float = 0.0
    created_at: str | None = None
    node_id: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)


Entity = Union[Peer, Node, Workload]


class ClusterMetrics(BaseModel):
    figures: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# WHAT IS HAPPENING HERE:
# The wire calls the sender field "from", which is a Python keyword.
# The alias keeps the wire name for dumps while code uses `from_peer`.
class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_peer: str = Field(alias="from")
    from_name: str
    to: str | None = None
    room_id: str | None = None
    content: str
    timestamp: int
    local: bool = False


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED_ABNORMAL = "closed_abnormal"
    EXHAUSTED = "exhausted"


EventKind = Literal["snapshot", "upserted", "patched", "removed", "metric", "chat", "error"]
Collection = Literal["peers", "nodes", "workloads", "chat", "network", "cluster", "system"]


class CanonicalEvent(BaseModel):
    """One inbound frame after normalization, whatever shape it arrived in."""
    tag: str
    kind: EventKind
    collection: Collection
    entity_id: str | None = None
    entity: Entity | None = None
    entities: list[Entity] = Field(default_factory=list)
    patch: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)
    message: ChatMessage | None = None
    detail: str | None = None


class StoreChange(BaseModel):
    store: str
    op: Literal["upsert", "remove", "replace_all", "clear"]
    ids: list[str] = Field(default_factory=list)

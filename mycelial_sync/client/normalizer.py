"""
MODULE OVERVIEW:
Maps heterogeneous inbound frames onto one CanonicalEvent shape.

WHAT IS HAPPENING HERE:
The node's wire format is not stable across deployments. The same peer id
shows up as `peer_id` on one build and as `data.peer_id` on another, a
peer name as `name` or `display_name`, a workload list bare or wrapped.
Instead of one fixed schema we keep, per tag, an ordered list of candidate
paths and take the first one that yields a value.

Forward compatibility: unknown tags are dropped quietly. A frame is only
dropped loudly when nothing usable can be found in it (no identifier
under any candidate path). Nothing in here raises into the channel.
"""
import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from uuid import uuid4

from loguru import logger

from mycelial_sync.shared.client_utils import decode_frame, now_ms
from mycelial_sync.shared.errors import DecodeError
from mycelial_sync.shared.models import CanonicalEvent, ChatMessage, Node, Peer, Workload

# ==========================
# PATH RESOLUTION
# ==========================


def resolve_path(obj: Any, path: str) -> Any:
    """Walk a dotted path (`data.peer_id`) through nested dicts."""
    current = obj
    for segment in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(segment)
    return current


def first_of(obj: Any, paths: Iterable[str]) -> Any:
    for path in paths:
        value = resolve_path(obj, path)
        if value is not None:
            return value
    return None


def first_text(obj: Any, paths: Iterable[str]) -> str | None:
    """First candidate that is a non-empty string (numbers are stringified)."""
    for path in paths:
        value = resolve_path(obj, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value
    return None


def first_dict(obj: Any, paths: Iterable[str]) -> dict | None:
    for path in paths:
        value = resolve_path(obj, path)
        if isinstance(value, dict):
            return value
    return None


def first_list(obj: Any, paths: Iterable[str]) -> list | None:
    for path in paths:
        value = resolve_path(obj, path)
        if isinstance(value, list):
            return value
    return None


def _as_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    # json accepts NaN and 1e400
    return number if math.isfinite(number) else default


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


# ==========================
# ENTITY PARSERS
# ==========================

PEER_ID_FIELDS = ("id", "peer_id")
PEER_NAME_FIELDS = ("name", "display_name")
NODE_ID_FIELDS = ("nodeId", "node_id", "id")
NODE_NAME_FIELDS = ("name", "hostname", "node_name")
NODE_STATUS_FIELDS = ("status", "health", "state")
NODE_USAGE_FIELDS = ("cpu", "memory", "disk", "uptime_seconds")
WORKLOAD_ID_FIELDS = ("id", "workload_id", "workloadId")


def _reputation(value: Any) -> float:
    # Either a bare score or a {score: n} record
    if isinstance(value, dict):
        value = value.get("score")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return clamp_unit(_as_float(value, 0.5))


def parse_peer(raw: dict, entity_id: str | None = None) -> Peer | None:
    peer_id = entity_id or first_text(raw, PEER_ID_FIELDS)
    if not peer_id:
        return None
    location = raw.get("location")
    addresses = raw.get("addresses")
    return Peer(
        id=peer_id,
        name=first_text(raw, PEER_NAME_FIELDS) or f"Peer-{peer_id[:12]}",
        reputation=_reputation(raw.get("reputation")),
        location=location if isinstance(location, (dict, str)) else None,
        addresses=[str(a) for a in addresses] if isinstance(addresses, list) else [],
    )


def parse_node(raw: dict, entity_id: str | None = None) -> Node | None:
    node_id = entity_id or first_text(raw, NODE_ID_FIELDS)
    if not node_id:
        return None
    network = raw.get("network")
    workloads = raw.get("workloads")
    return Node(
        id=node_id,
        name=first_text(raw, NODE_NAME_FIELDS) or f"Node-{node_id[:12]}",
        status=first_text(raw, NODE_STATUS_FIELDS) or "unknown",
        capacity=first_dict(raw, ("resources_capacity", "capacity")) or {},
        allocatable=first_dict(raw, ("resources_allocatable", "allocatable")) or {},
        network=network if isinstance(network, dict) else None,
        workloads=workloads if isinstance(workloads, dict) else None,
        metrics={k: raw[k] for k in NODE_USAGE_FIELDS if k in raw},
    )


def parse_workload(raw: dict, entity_id: str | None = None) -> Workload | None:
    workload_id = entity_id or first_text(raw, WORKLOAD_ID_FIELDS)
    if not workload_id:
        return None
    return Workload(
        id=workload_id,
        name=first_text(raw, ("name", "title")),
        status=first_text(raw, ("status", "state")) or "pending",
        progress=_as_float(raw.get("progress"), 0.0),
        created_at=first_text(raw, ("created_at", "createdAt")),
        node_id=first_text(raw, ("node_id", "nodeId", "assigned_node")),
        spec=first_dict(raw, ("spec",)) or {},
    )


def parse_chat_message(raw: dict) -> ChatMessage | None:
    content = first_of(raw, ("content", "text", "body"))
    if not isinstance(content, str):
        return None
    sender = first_text(raw, ("from", "from_peer", "sender", "peer_id")) or "unknown"
    timestamp = first_of(raw, ("timestamp", "ts"))
    return ChatMessage(
        id=first_text(raw, ("id", "message_id")) or f"msg-{uuid4().hex[:12]}",
        from_peer=sender,
        from_name=first_text(raw, ("from_name", "sender_name")) or f"Peer-{sender[:8]}",
        to=first_text(raw, ("to", "recipient")),
        room_id=first_text(raw, ("room_id", "roomId", "room")),
        content=content,
        timestamp=int(_as_float(timestamp, now_ms())),
    )


ENTITY_PARSERS: dict[str, Callable[..., Any]] = {
    "peers": parse_peer,
    "nodes": parse_node,
    "workloads": parse_workload,
}

# ==========================
# TAG RULES
# ==========================


@dataclass(frozen=True)
class EventRule:
    kind: str
    collection: str
    # Where the entity, entity list or metric block lives, in priority order
    payload_paths: tuple[str, ...] = ()
    # Where the identifier lives, in priority order
    id_paths: tuple[str, ...] = ()


PEER_ID_PATHS = ("peer_id", "data.peer_id", "id", "data.id")
NODE_ID_PATHS = ("nodeId", "node_id", "data.nodeId", "data.node_id", "data.id", "id")
WORKLOAD_ID_PATHS = ("workloadId", "workload_id", "data.workloadId", "data.workload_id", "data.id", "id")

_PEER_UPSERT = EventRule("upserted", "peers", ("peer_info", "data.peer_info", "data"), PEER_ID_PATHS)
_NODE_UPSERT = EventRule("upserted", "nodes", ("data.node", "node", "data"), NODE_ID_PATHS)
_WORKLOAD_UPSERT = EventRule("upserted", "workloads", ("data.workload", "workload", "data"), WORKLOAD_ID_PATHS)

RULES: dict[str, EventRule] = {
    "peers_list": EventRule("snapshot", "peers", ("peers", "data.peers", "data")),
    "peer_joined": _PEER_UPSERT,
    "peer_updated": _PEER_UPSERT,
    "peer_left": EventRule("removed", "peers", id_paths=PEER_ID_PATHS),
    "reputation_update": EventRule(
        "patched", "peers", ("new_score", "data.new_score", "reputation", "data.reputation", "score"), PEER_ID_PATHS
    ),
    "node_list": EventRule("snapshot", "nodes", ("nodes", "data.nodes", "data")),
    "node_joined": _NODE_UPSERT,
    "node_status": _NODE_UPSERT,
    "node_updated": _NODE_UPSERT,
    "node_left": EventRule("removed", "nodes", id_paths=NODE_ID_PATHS),
    "workload_list": EventRule("snapshot", "workloads", ("workloads", "data.workloads", "data")),
    "workload_created": _WORKLOAD_UPSERT,
    "workload_updated": _WORKLOAD_UPSERT,
    "workload_status": _WORKLOAD_UPSERT,
    "workload_completed": _WORKLOAD_UPSERT,
    "workload_failed": _WORKLOAD_UPSERT,
    "workload_cancelled": _WORKLOAD_UPSERT,
    "workload_removed": EventRule("removed", "workloads", id_paths=WORKLOAD_ID_PATHS),
    "cluster_metrics": EventRule("metric", "cluster", ("data.cluster", "cluster", "data")),
    "stats": EventRule("metric", "network", ("data",)),
    "chat_message": EventRule("chat", "chat", ("data", "message")),
    "error": EventRule("error", "system", ("message", "data.message", "error")),
}


class EventNormalizer:
    def __init__(self, rules: dict[str, EventRule] | None = None):
        self.rules = rules or RULES
        self.stats = {"normalized": 0, "dropped": 0, "unknown": 0}

    def decode(self, raw: str | bytes | dict) -> dict:
        return decode_frame(raw)

    def normalize(self, raw: str | bytes | dict) -> CanonicalEvent | None:
        try:
            frame = self.decode(raw)
        except DecodeError as e:
            self.stats["dropped"] += 1
            logger.warning(f"event=frame_dropped reason=decode detail='{e}'")
            return None

        tag = frame.get("type")
        rule = self.rules.get(tag) if isinstance(tag, str) else None
        if rule is None:
            self.stats["unknown"] += 1
            logger.debug(f"event=frame_ignored reason=unknown_tag tag={tag}")
            return None

        handler = getattr(self, f"_normalize_{rule.kind}")
        event = handler(tag, rule, frame)
        if event is None:
            self.stats["dropped"] += 1
        else:
            self.stats["normalized"] += 1
        return event

    def _drop(self, tag: str, reason: str) -> None:
        logger.warning(f"event=frame_dropped tag={tag} reason={reason}")
        return None

    def _normalize_snapshot(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        items = first_list(frame, rule.payload_paths)
        if items is None:
            return self._drop(tag, "no_entity_list")
        parse = ENTITY_PARSERS[rule.collection]
        entities = []
        for item in items:
            entity = parse(item) if isinstance(item, dict) else None
            if entity is None:
                logger.warning(f"event=snapshot_item_dropped tag={tag} reason=missing_id")
                continue
            entities.append(entity)
        return CanonicalEvent(tag=tag, kind="snapshot", collection=rule.collection, entities=entities)

    def _normalize_upserted(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        payload = first_dict(frame, rule.payload_paths) or frame
        entity_id = first_text(frame, rule.id_paths)
        entity = ENTITY_PARSERS[rule.collection](payload, entity_id)
        if entity is None:
            return self._drop(tag, "missing_id")
        return CanonicalEvent(tag=tag, kind="upserted", collection=rule.collection, entity_id=entity.id, entity=entity)

    def _normalize_removed(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        entity_id = first_text(frame, rule.id_paths)
        if not entity_id:
            return self._drop(tag, "missing_id")
        return CanonicalEvent(tag=tag, kind="removed", collection=rule.collection, entity_id=entity_id)

    def _normalize_patched(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        entity_id = first_text(frame, rule.id_paths)
        if not entity_id:
            return self._drop(tag, "missing_id")
        score = first_of(frame, rule.payload_paths)
        if isinstance(score, bool) or not isinstance(score, (int, float, dict)):
            return self._drop(tag, "missing_score")
        return CanonicalEvent(
            tag=tag,
            kind="patched",
            collection=rule.collection,
            entity_id=entity_id,
            patch={"reputation": _reputation(score)},
        )

    def _normalize_metric(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        metrics = first_dict(frame, rule.payload_paths)
        if metrics is None:
            metrics = {k: v for k, v in frame.items() if k != "type"}
        return CanonicalEvent(tag=tag, kind="metric", collection=rule.collection, metrics=metrics)

    def _normalize_chat(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        payload = first_dict(frame, rule.payload_paths) or frame
        message = parse_chat_message(payload)
        if message is None:
            return self._drop(tag, "missing_content")
        return CanonicalEvent(tag=tag, kind="chat", collection="chat", message=message)

    def _normalize_error(self, tag: str, rule: EventRule, frame: dict) -> CanonicalEvent | None:
        detail = first_text(frame, rule.payload_paths) or "unknown error"
        return CanonicalEvent(tag=tag, kind="error", collection="system", detail=detail)

"""
MODULE OVERVIEW:
The sandbox node's registry: the mirrored world state plus every open socket.

WHAT IS HAPPENING HERE:
The sandbox stands in for a real node during development. It keeps its
collections as raw wire dicts (the shapes a real node would send, not the
client's canonical models) and fans every frame out to every WebSocket.
A socket that fails a send is dropped from the registry.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi.websockets import WebSocket
from loguru import logger


TOPIC_PREFIXES = {"workload_": "workloads", "node_": "nodes", "cluster_": "cluster"}


def topic_for(frame: dict) -> str | None:
    """Orchestrator topic a frame belongs to, or None for p2p frames."""
    frame_type = str(frame.get("type", ""))
    for prefix, topic in TOPIC_PREFIXES.items():
        if frame_type.startswith(prefix):
            return topic
    return None


class SandboxState:
    def __init__(self, node_name: str = "sandbox-node"):
        self.local_peer_id = f"12D3KooW{uuid.uuid4().hex[:24]}"
        self.node_name = node_name
        self.peers: Dict[str, dict] = {
            self.local_peer_id: {
                "id": self.local_peer_id,
                "name": node_name,
                "reputation": 0.9,
                "addresses": ["/ip4/127.0.0.1/tcp/9000"],
            }
        }
        self.nodes: Dict[str, dict] = {}
        self.workloads: Dict[str, dict] = {}
        self.message_count = 0
        self.startup_time = datetime.now(timezone.utc)

    def uptime_s(self) -> float:
        return (datetime.now(timezone.utc) - self.startup_time).total_seconds()

    def create_workload(self, spec: dict[str, Any]) -> dict:
        workload_id = f"wl-{uuid.uuid4().hex[:8]}"
        workload = {
            "id": workload_id,
            "name": spec.get("name") or workload_id,
            "status": "pending",
            "progress": 0.0,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "spec": spec,
        }
        self.workloads[workload_id] = workload
        return workload

    def cluster_metrics(self) -> dict:
        statuses = [w["status"] for w in self.workloads.values()]
        return {
            "total_nodes": len(self.nodes),
            "healthy_nodes": sum(1 for n in self.nodes.values() if n.get("status") == "healthy"),
            "running_workloads": statuses.count("running"),
            "pending_workloads": statuses.count("pending"),
            "completed_workloads": statuses.count("completed"),
        }


class SandboxHub:
    def __init__(self, state: SandboxState | None = None):
        self.state = state or SandboxState()
        self.active_websockets: Dict[str, WebSocket] = {}
        self.subscriptions: Dict[str, set[str]] = {}
        self.total_frames_dispatched = 0

    async def connect_ws(self, client_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_websockets[client_id] = websocket
        self.subscriptions[client_id] = set()
        logger.info(f"client_id={client_id} protocol=websocket event=connect reason=accepted")

    def disconnect_ws(self, client_id: str):
        if client_id in self.active_websockets:
            del self.active_websockets[client_id]
            self.subscriptions.pop(client_id, None)
            logger.info(f"client_id={client_id} protocol=websocket event=disconnect reason=cleanup")

    def subscribe(self, client_id: str, topic: str):
        self.subscriptions.setdefault(client_id, set()).add(topic)
        logger.debug(f"client_id={client_id} event=subscribe topic={topic}")

    async def send_to(self, client_id: str, frame: dict) -> bool:
        websocket = self.active_websockets.get(client_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(frame)
        except Exception as e:
            logger.warning(f"client_id={client_id} protocol=websocket event=error reason='{e}'")
            self.disconnect_ws(client_id)
            return False
        return True

    def wants(self, client_id: str, frame: dict) -> bool:
        """A socket with no subscriptions gets everything; otherwise only its topics."""
        topics = self.subscriptions.get(client_id)
        topic = topic_for(frame)
        if not topics or topic is None:
            return True
        return topic in topics or "orchestrator" in topics

    async def broadcast(self, frame: dict, exclude: str | None = None):
        self.total_frames_dispatched += 1
        for client_id in list(self.active_websockets):
            if client_id != exclude and self.wants(client_id, frame):
                await self.send_to(client_id, frame)

    def peers_list_frame(self) -> dict:
        return {"type": "peers_list", "peers": list(self.state.peers.values())}

    def get_stats(self) -> dict:
        return {
            "active_ws": len(self.active_websockets),
            "total_frames_dispatched": self.total_frames_dispatched,
            "peer_count": len(self.state.peers),
            "message_count": self.state.message_count,
            "uptime_s": self.state.uptime_s(),
        }

"""
MODULE OVERVIEW:
Infinite background async generators that keep the sandbox world moving.

WHAT IS HAPPENING HERE:
Each generator mutates the sandbox state and yields the frame a real node
would push for that change. Peer churn deliberately alternates between the
flat and the `data`-wrapped frame shapes, so a client watching the sandbox
exercises both normalization paths.
"""

import asyncio
import random
import uuid

from mycelial_sync.sandbox.hub import SandboxState

PEER_NAMES = ["Alice", "Bob", "Carol", "Dmitri", "Eun-ji", "Farah", "Gustavo", "Hana"]
NODE_STATUSES = ["healthy", "healthy", "healthy", "degraded", "unhealthy"]


def peer_joined_frame(peer: dict, nested: bool) -> dict:
    if nested:
        return {
            "type": "peer_joined",
            "data": {
                "peer_id": peer["id"],
                "peer_info": {"display_name": peer["name"], "reputation": {"score": peer["reputation"]}},
            },
        }
    return {"type": "peer_joined", "peer_id": peer["id"], "name": peer["name"]}


def peer_left_frame(peer_id: str, nested: bool) -> dict:
    if nested:
        return {"type": "peer_left", "data": {"peer_id": peer_id}}
    return {"type": "peer_left", "peer_id": peer_id}


async def peer_churn_generator(state: SandboxState, interval_s: float = 4.0):
    """Peers join and leave; the local peer never leaves."""
    nested = False
    while True:
        await asyncio.sleep(random.uniform(interval_s * 0.5, interval_s * 1.5))
        nested = not nested
        remote = [pid for pid in state.peers if pid != state.local_peer_id]
        if remote and (len(remote) >= 5 or random.random() < 0.3):
            peer_id = random.choice(remote)
            del state.peers[peer_id]
            yield peer_left_frame(peer_id, nested)
        else:
            peer = {
                "id": f"12D3KooW{uuid.uuid4().hex[:24]}",
                "name": random.choice(PEER_NAMES),
                "reputation": round(random.uniform(0.2, 1.0), 2),
                "addresses": [],
            }
            state.peers[peer["id"]] = peer
            yield peer_joined_frame(peer, nested)


def seed_nodes(state: SandboxState, count: int = 3):
    for i in range(count):
        node_id = f"node-{i + 1}"
        state.nodes[node_id] = {
            "nodeId": node_id,
            "name": f"worker-{i + 1}",
            "status": "healthy",
            "resources_capacity": {"cpu_cores": 8, "memory_mb": 16384, "disk_mb": 512000},
            "resources_allocatable": {"cpu_cores": 6, "memory_mb": 12288, "disk_mb": 400000},
        }


async def node_status_generator(state: SandboxState, interval_s: float = 3.0):
    """Nodes drift between health states and free capacity."""
    if not state.nodes:
        seed_nodes(state)
    while True:
        await asyncio.sleep(random.uniform(interval_s * 0.5, interval_s * 1.5))
        node = state.nodes[random.choice(list(state.nodes))]
        node["status"] = random.choice(NODE_STATUSES)
        capacity = node["resources_capacity"]
        node["resources_allocatable"] = {
            key: round(value * random.uniform(0.2, 0.9)) for key, value in capacity.items()
        }
        yield {"type": "node_status", "data": dict(node)}


async def workload_progress_generator(state: SandboxState, interval_s: float = 1.5):
    """Pending workloads start, running ones advance, some fail."""
    while True:
        await asyncio.sleep(interval_s)
        for workload in list(state.workloads.values()):
            if workload["status"] == "pending":
                workload["status"] = "running"
                if state.nodes:
                    workload["node_id"] = random.choice(list(state.nodes))
            elif workload["status"] == "running":
                workload["progress"] = min(1.0, round(workload["progress"] + random.uniform(0.05, 0.2), 2))
                if random.random() < 0.02:
                    workload["status"] = "failed"
                    yield {"type": "workload_failed", "data": dict(workload)}
                    continue
                if workload["progress"] >= 1.0:
                    workload["status"] = "completed"
                    yield {"type": "workload_completed", "data": dict(workload)}
                    continue
            else:
                continue
            yield {"type": "workload_updated", "data": dict(workload)}
        yield {"type": "cluster_metrics", "data": state.cluster_metrics()}


def get_all_generators(state: SandboxState, peer_churn_s: float, node_status_s: float, workload_tick_s: float):
    return [
        peer_churn_generator(state, peer_churn_s),
        node_status_generator(state, node_status_s),
        workload_progress_generator(state, workload_tick_s),
    ]

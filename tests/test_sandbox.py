"""
Tests for the sandbox node.

Covers:
- REST pull endpoints and the shapes the sync client expects from them
- Workload commands, including unknown ids
- WebSocket: peers_list on connect, chat fan-out excluding the sender
- Generator frames normalize into canonical events
"""

import pytest
from fastapi.testclient import TestClient

from mycelial_sync.client.normalizer import EventNormalizer
from mycelial_sync.sandbox.dummy_data import (
    peer_joined_frame,
    peer_left_frame,
    seed_nodes,
    workload_progress_generator,
)
from mycelial_sync.sandbox.hub import SandboxHub, SandboxState, topic_for
from mycelial_sync.sandbox.main import create_app
from mycelial_sync.sandbox.websocket import handle_client_message


@pytest.fixture
def client():
    with TestClient(create_app(start_generators=False)) as test_client:
        yield test_client


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.frames = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, frame):
        self.frames.append(frame)


class TestRestEndpoints:
    def test_peers_use_alternate_field_names(self, client):
        peers = client.get("/api/peers").json()
        info = client.get("/api/info").json()

        assert isinstance(peers, list)
        assert peers[0]["peer_id"] == info["peer_id"]
        assert "display_name" in peers[0]

    def test_orchestrator_collections_are_wrapped(self, client):
        nodes = client.get("/api/orchestrator/nodes").json()
        assert [n["nodeId"] for n in nodes["nodes"]] == ["node-1", "node-2", "node-3"]
        assert client.get("/api/orchestrator/workloads").json() == {"workloads": []}
        assert client.get("/api/orchestrator/metrics").json()["cluster"]["total_nodes"] == 3

    def test_create_then_cancel_and_retry(self, client):
        created = client.post("/api/orchestrator/workloads", json={"name": "job", "image": "busybox"})
        assert created.status_code == 201
        workload_id = created.json()["id"]

        cancelled = client.post(f"/api/orchestrator/workloads/{workload_id}/cancel").json()
        assert cancelled["status"] == "cancelled"

        retried = client.post(f"/api/orchestrator/workloads/{workload_id}/retry").json()
        assert retried["status"] == "pending"
        assert retried["progress"] == 0.0

    def test_unknown_workload_is_404(self, client):
        assert client.post("/api/orchestrator/workloads/missing/cancel").status_code == 404

    def test_health_and_stats(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}
        assert client.get("/stats").json()["peer_count"] == 1


class TestWebSocket:
    def test_peers_list_on_connect(self, client):
        with client.websocket_connect("/ws?client_id=alice") as ws:
            frame = ws.receive_json()

        assert frame["type"] == "peers_list"
        assert len(frame["peers"]) == 1

    def test_chat_reaches_other_clients(self, client):
        with client.websocket_connect("/ws?client_id=alice") as alice:
            alice.receive_json()
            with client.websocket_connect("/ws?client_id=bob") as bob:
                bob.receive_json()
                alice.send_json({"type": "send_chat", "content": "hello bob"})
                frame = bob.receive_json()

        assert frame["type"] == "chat_message"
        assert frame["from"] == "alice"
        assert frame["content"] == "hello bob"

    @pytest.mark.asyncio
    async def test_chat_is_not_looped_back_to_sender(self):
        hub = SandboxHub()
        alice, bob = FakeWebSocket(), FakeWebSocket()
        await hub.connect_ws("alice", alice)
        await hub.connect_ws("bob", bob)

        await handle_client_message(hub, "alice", {"type": "send_chat", "content": "hi", "room_id": "r1"})

        assert alice.frames == []
        assert bob.frames[0]["room_id"] == "r1"
        assert hub.state.message_count == 1

    @pytest.mark.asyncio
    async def test_bad_chat_and_subscribe(self):
        hub = SandboxHub()
        alice = FakeWebSocket()
        await hub.connect_ws("alice", alice)

        await handle_client_message(hub, "alice", {"type": "subscribe", "topic": "nodes"})
        await handle_client_message(hub, "alice", {"type": "send_chat"})

        assert hub.subscriptions["alice"] == {"nodes"}
        assert alice.frames == [{"type": "error", "message": "send_chat requires content"}]


class TestGeneratedFrames:
    @pytest.mark.parametrize("nested", [True, False])
    def test_peer_churn_frames_normalize(self, nested):
        normalizer = EventNormalizer()
        peer = {"id": "12D3KooWpeer", "name": "Alice", "reputation": 0.7}

        joined = normalizer.normalize(peer_joined_frame(peer, nested))
        left = normalizer.normalize(peer_left_frame(peer["id"], nested))

        assert joined.entity.id == left.entity_id == "12D3KooWpeer"
        assert joined.entity.name == "Alice"

    def test_seeded_nodes_normalize(self):
        state = SandboxState()
        seed_nodes(state)
        normalizer = EventNormalizer()

        event = normalizer.normalize({"type": "node_list", "data": list(state.nodes.values())})
        assert [n.id for n in event.entities] == ["node-1", "node-2", "node-3"]
        assert event.entities[0].capacity["cpu_cores"] == 8

    @pytest.mark.asyncio
    async def test_workload_tick_starts_pending_workloads(self):
        state = SandboxState()
        seed_nodes(state)
        workload = state.create_workload({"name": "job"})
        generator = workload_progress_generator(state, interval_s=0)

        update = await generator.__anext__()
        metrics = await generator.__anext__()
        await generator.aclose()

        assert update["type"] == "workload_updated"
        assert update["data"]["id"] == workload["id"]
        assert update["data"]["status"] == "running"
        assert metrics["type"] == "cluster_metrics"
        assert metrics["data"]["running_workloads"] == 1


class TestTopicFiltering:
    @pytest.mark.asyncio
    async def test_broadcast_respects_subscriptions(self):
        hub = SandboxHub()
        nodes_only, everything, catch_all = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await hub.connect_ws("nodes-only", nodes_only)
        await hub.connect_ws("everything", everything)
        await hub.connect_ws("catch-all", catch_all)
        hub.subscribe("nodes-only", "nodes")
        hub.subscribe("catch-all", "orchestrator")

        await hub.broadcast({"type": "workload_updated", "data": {"id": "w1"}})
        await hub.broadcast({"type": "node_status", "data": {"nodeId": "node-1"}})
        await hub.broadcast({"type": "peer_joined", "peer_id": "abc"})

        assert [f["type"] for f in nodes_only.frames] == ["node_status", "peer_joined"]
        assert len(everything.frames) == 3
        assert len(catch_all.frames) == 3

    def test_topic_for(self):
        assert topic_for({"type": "workload_completed"}) == "workloads"
        assert topic_for({"type": "cluster_metrics"}) == "cluster"
        assert topic_for({"type": "chat_message"}) is None

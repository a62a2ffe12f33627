"""
MODULE OVERVIEW:
The Sync Controller: stores + pull channel + push channels, wired together.

WHAT IS HAPPENING HERE:
Two independently-lived push channels feed one set of stores:
  - `p2p` carries peers, chat and network stats,
  - `orchestrator` carries workloads, nodes and cluster metrics.
Each channel only applies the collections it owns, so pointing both at the
same server URL never double-applies a frame.

When a channel opens we hydrate its collections from the REST snapshot
endpoints (and, for the orchestrator, subscribe to its topics). Frames are
then normalized and applied one at a time in arrival order.

Commands are optimistic: the local store changes before the REST call
resolves, a `<noun>_<verb>` notification goes out on the channel for other
observers, and a failed call raises CommandError WITHOUT rolling back.
The next snapshot or authoritative event reconciles the store.
"""
import asyncio
from collections import deque
from typing import Any

from loguru import logger

from mycelial_sync.client.connection import ConnectionManager, Connector, Scheduler
from mycelial_sync.client.normalizer import EventNormalizer, first_text, parse_node, parse_peer, parse_workload
from mycelial_sync.client.snapshot import SnapshotLoader
from mycelial_sync.client.store import EntityStore
from mycelial_sync.shared.client_utils import iter_frames, now_ms
from mycelial_sync.shared.config import Settings, settings as default_settings
from mycelial_sync.shared.errors import CommandError, DecodeError, ExhaustedRetries, SyncError, TransportError
from mycelial_sync.shared.events import Signal
from mycelial_sync.shared.models import CanonicalEvent, ChatMessage, ClusterMetrics, ConnectionState, Node, Peer, Workload

P2P = "p2p"
ORCHESTRATOR = "orchestrator"

CHANNEL_COLLECTIONS = {
    P2P: frozenset({"peers", "chat", "network", "system"}),
    ORCHESTRATOR: frozenset({"workloads", "nodes", "cluster", "system"}),
}


class SyncController:
    def __init__(
        self,
        settings: Settings | None = None,
        p2p_loader: SnapshotLoader | None = None,
        orchestrator_loader: SnapshotLoader | None = None,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
        auto_connect: bool | None = None,
    ):
        self.settings = settings or default_settings

        self.peers: EntityStore[Peer] = EntityStore("peers")
        self.nodes: EntityStore[Node] = EntityStore("nodes")
        self.workloads: EntityStore[Workload] = EntityStore("workloads")
        self.messages: deque[ChatMessage] = deque(maxlen=self.settings.CHAT_HISTORY_LIMIT)
        self.cluster_metrics: ClusterMetrics | None = None
        self.network_stats: dict[str, Any] | None = None
        self.local_peer_id: str | None = None
        self.error: str | None = None
        # Non-store state: connection status, chat log, metrics, error
        self.changed = Signal("controller")

        self.normalizer = EventNormalizer()
        self.p2p_api = p2p_loader or SnapshotLoader(self.settings.API_URL, self.settings.HTTP_TIMEOUT_S)
        self.orchestrator_api = orchestrator_loader or SnapshotLoader(
            self.settings.ORCHESTRATOR_API_URL, self.settings.HTTP_TIMEOUT_S
        )

        self.channels: dict[str, ConnectionManager] = {
            P2P: self._make_channel(P2P, self.settings.P2P_WS_URL, self._on_p2p_open, connector, scheduler),
            ORCHESTRATOR: self._make_channel(
                ORCHESTRATOR, self.settings.ORCHESTRATOR_WS_URL, self._on_orchestrator_open, connector, scheduler
            ),
        }

        if self.settings.AUTO_CONNECT if auto_connect is None else auto_connect:
            self._auto_connect()

    def _auto_connect(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Built outside a coroutine; the caller connects once a loop runs
            logger.info("event=auto_connect_deferred reason=no_running_loop")
            return
        self.connect()

    def _make_channel(self, name, url, on_open, connector, scheduler) -> ConnectionManager:
        async def on_message(raw: Any) -> None:
            self.handle_frame(name, raw)

        def on_error(error: SyncError) -> None:
            self._on_channel_error(name, error)

        return ConnectionManager(
            name,
            url,
            base_interval_s=self.settings.RECONNECT_INTERVAL_S,
            max_attempts=self.settings.MAX_RECONNECT_ATTEMPTS,
            reset_delay_s=self.settings.RESET_DELAY_S,
            open_timeout_s=self.settings.HTTP_TIMEOUT_S,
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            on_state_change=lambda state: self.changed.emit({"channel": name, "state": state}),
            connector=connector,
            scheduler=scheduler,
        )

    # ==========================
    # CONNECTION LIFECYCLE
    # ==========================
    @property
    def p2p(self) -> ConnectionManager:
        return self.channels[P2P]

    @property
    def orchestrator(self) -> ConnectionManager:
        return self.channels[ORCHESTRATOR]

    def connect(self) -> list[asyncio.Task]:
        tasks = [channel.connect() for channel in self.channels.values()]
        return [task for task in tasks if task is not None]

    def disconnect(self) -> None:
        for channel in self.channels.values():
            channel.disconnect()

    def reset_connection(self) -> None:
        for channel in self.channels.values():
            channel.reset_connection()

    async def aclose(self) -> None:
        await asyncio.gather(*(channel.aclose() for channel in self.channels.values()))
        await self.p2p_api.aclose()
        if self.orchestrator_api is not self.p2p_api:
            await self.orchestrator_api.aclose()

    def status(self) -> dict[str, ConnectionState]:
        return {name: channel.state for name, channel in self.channels.items()}

    @property
    def connected(self) -> bool:
        return any(channel.is_open for channel in self.channels.values())

    def _on_channel_error(self, channel: str, error: SyncError) -> None:
        if isinstance(error, ExhaustedRetries):
            self._set_error(f"{channel}: {error.message}")
        else:
            logger.debug(f"channel={channel} event=transport_error detail='{error}'")

    # ==========================
    # HYDRATION
    # ==========================
    async def _on_p2p_open(self) -> None:
        await self.refresh_peers()

    async def _on_orchestrator_open(self) -> None:
        for topic in self.settings.SUBSCRIBE_TOPICS:
            await self.orchestrator.send({"type": "subscribe", "topic": topic})
        await self.refresh_orchestrator()

    async def refresh_peers(self) -> None:
        results = await asyncio.gather(
            self._fetch_info(),
            self.p2p_api.fetch_collection("/peers", field="peers", parse=parse_peer),
            return_exceptions=True,
        )
        info, peers = results
        self._hydrate("info", info, None)
        self._hydrate("peers", peers, self.peers)

    async def refresh_orchestrator(self) -> None:
        results = await asyncio.gather(
            self.orchestrator_api.fetch_collection("/orchestrator/workloads", field="workloads", parse=parse_workload),
            self.orchestrator_api.fetch_collection("/orchestrator/nodes", field="nodes", parse=parse_node),
            self._fetch_cluster_metrics(),
            return_exceptions=True,
        )
        workloads, nodes, metrics = results
        self._hydrate("workloads", workloads, self.workloads)
        self._hydrate("nodes", nodes, self.nodes)
        self._hydrate("cluster_metrics", metrics, None)

    async def _fetch_info(self) -> str | None:
        info = await self.p2p_api.fetch_document("/info")
        self.local_peer_id = first_text(info, ("peer_id", "id")) or self.local_peer_id
        return self.local_peer_id

    async def _fetch_cluster_metrics(self) -> ClusterMetrics:
        figures = await self.orchestrator_api.fetch_document("/orchestrator/metrics", field="cluster")
        self.cluster_metrics = ClusterMetrics(figures=figures)
        return self.cluster_metrics

    def _hydrate(self, what: str, result: Any, store: EntityStore | None) -> None:
        if isinstance(result, (TransportError, DecodeError)):
            logger.warning(f"event=hydration_failed what={what} reason='{result}'")
            self._set_error(f"Failed to fetch {what}: {result.message}")
            return
        if isinstance(result, BaseException):
            raise result
        if store is not None:
            store.replace_all(result)
        else:
            self.changed.emit({"hydrated": what})
        logger.debug(f"event=hydrated what={what}")

    # ==========================
    # INBOUND FRAMES
    # ==========================
    def handle_frame(self, channel: str, raw: Any) -> None:
        """Apply every line-delimited frame of one message, isolating failures per frame."""
        try:
            frames = list(iter_frames(raw)) if isinstance(raw, (str, bytes, bytearray)) else [raw]
        except DecodeError as e:
            logger.warning(f"channel={channel} event=frame_dropped reason='{e}'")
            return
        for frame in frames:
            try:
                event = self.normalizer.normalize(frame)
                if event is None or event.collection not in CHANNEL_COLLECTIONS.get(channel, ()):
                    continue
                self.apply(event)
            except Exception as e:
                logger.error(f"channel={channel} event=frame_failed frame={str(frame)[:60]} reason='{e}'")

    def apply(self, event: CanonicalEvent) -> None:
        if event.kind == "chat":
            self._append_message(event.message)
        elif event.kind == "metric":
            if event.collection == "cluster":
                self.cluster_metrics = ClusterMetrics(figures=event.metrics)
            else:
                self.network_stats = event.metrics
            self.changed.emit({"metric": event.collection})
        elif event.kind == "error":
            self._set_error(event.detail)
        else:
            store = self._store_for(event.collection)
            if event.kind == "snapshot":
                store.replace_all(event.entities)
            elif event.kind == "upserted":
                store.upsert(event.entity)
            elif event.kind == "removed":
                store.remove(event.entity_id)
            elif event.kind == "patched":
                current = store.get(event.entity_id)
                if current is None:
                    logger.debug(f"event=patch_ignored tag={event.tag} id={event.entity_id} reason=unknown_entity")
                else:
                    store.upsert(current.model_copy(update=event.patch))

    def _store_for(self, collection: str) -> EntityStore:
        return {"peers": self.peers, "nodes": self.nodes, "workloads": self.workloads}[collection]

    def _append_message(self, message: ChatMessage) -> None:
        # deque(maxlen) drops the oldest entry once full
        self.messages.append(message)
        self.changed.emit({"chat": message.id})

    # ==========================
    # COMMANDS
    # ==========================
    async def send_chat(self, content: str, to: str | None = None, room_id: str | None = None) -> ChatMessage:
        payload = {"type": "send_chat", "content": content, "to": to, "room_id": room_id}
        await self.p2p.send({k: v for k, v in payload.items() if v is not None})

        # The server never loops a sender's own broadcast back, so echo locally
        local_id = self.local_peer_id or "unknown"
        message = ChatMessage(
            id=f"local-{now_ms()}",
            from_peer=local_id,
            from_name=f"Peer-{local_id[:8]} (you)",
            to=to,
            room_id=room_id,
            content=content,
            timestamp=now_ms(),
            local=True,
        )
        self._append_message(message)
        return message

    async def send_command(self, noun: str, verb: str, entity_id: str, payload: Any = None) -> bool:
        frame: dict[str, Any] = {"type": f"{noun}_{verb}", f"{noun}Id": entity_id}
        if payload is not None:
            frame["data"] = payload
        channel = self.p2p if noun == "peer" else self.orchestrator
        return await channel.send(frame)

    async def create_workload(self, spec: dict[str, Any]) -> Workload:
        try:
            created = await self.orchestrator_api.post("/orchestrator/workloads", spec)
        except SyncError as e:
            self._command_failed("workload_create", None, e)
        workload = parse_workload(created) if isinstance(created, dict) else None
        if workload is None:
            self._command_failed("workload_create", None, DecodeError("response carries no workload id"))
        self.workloads.upsert(workload)
        return workload

    async def cancel_workload(self, workload_id: str) -> Workload | None:
        return await self._workload_command("cancel", workload_id, {"status": "cancelled"})

    async def retry_workload(self, workload_id: str) -> Workload | None:
        return await self._workload_command("retry", workload_id, {"status": "pending", "progress": 0.0})

    async def _workload_command(self, verb: str, workload_id: str, optimistic: dict[str, Any]) -> Workload | None:
        current = self.workloads.get(workload_id)
        if current is not None:
            self.workloads.upsert(current.model_copy(update=optimistic))
        await self.send_command("workload", verb, workload_id)

        try:
            body = await self.orchestrator_api.post(f"/orchestrator/workloads/{workload_id}/{verb}")
        except SyncError as e:
            self._command_failed(f"workload_{verb}", workload_id, e)

        authoritative = parse_workload(body, workload_id) if isinstance(body, dict) and body else None
        if authoritative is not None:
            self.workloads.upsert(authoritative)
        return self.workloads.get(workload_id)

    def _command_failed(self, command: str, entity_id: str | None, cause: BaseException) -> None:
        error = CommandError(command, entity_id, cause)
        logger.error(f"event=command_failed command={command} id={entity_id} reason='{cause}'")
        self._set_error(str(error))
        raise error

    # ==========================
    # LOCAL STATE
    # ==========================
    def _set_error(self, message: str | None) -> None:
        self.error = message
        self.changed.emit({"error": message})

    def clear_error(self) -> None:
        self._set_error(None)

    def reset(self) -> None:
        """Drop everything mirrored so far. Never called implicitly on reconnect."""
        self.peers.clear()
        self.nodes.clear()
        self.workloads.clear()
        self.messages.clear()
        self.cluster_metrics = None
        self.network_stats = None
        self.changed.emit({"reset": True})

    def graph_data(self) -> dict[str, list[dict[str, Any]]]:
        """Peers as graph nodes plus a full mesh of links between them."""
        peers = self.peers.list()
        nodes = [
            {
                "id": peer.id,
                "name": peer.name,
                "reputation": peer.reputation,
                "location": peer.location,
                "is_local": peer.id == self.local_peer_id,
            }
            for peer in peers
        ]
        links = [
            {"source": a.id, "target": b.id}
            for i, a in enumerate(peers)
            for b in peers[i + 1:]
        ]
        return {"nodes": nodes, "links": links}

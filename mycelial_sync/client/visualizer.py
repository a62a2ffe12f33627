"""
MODULE OVERVIEW:
The Rich terminal dashboard.

WHAT IS HAPPENING HERE:
The dashboard never touches a store's mutation surface. It subscribes to the
stores' and controller's change signals to keep a short activity timeline,
and re-renders the Layout from read-only snapshots (`store.list()`) a few
times per second while the controller's channels run in the background.
"""

import asyncio
from collections import deque
from datetime import datetime

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from mycelial_sync.client.controller import SyncController
from mycelial_sync.shared.models import ConnectionState, StoreChange

STATE_COLORS = {
    ConnectionState.OPEN: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.CLOSED_ABNORMAL: "red",
    ConnectionState.EXHAUSTED: "red",
}


def peers_table(controller: SyncController) -> Table:
    table = Table(title="Peers", expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta")
    table.add_column("Reputation", justify="right", style="green")
    for peer in controller.peers.list():
        marker = " (you)" if peer.id == controller.local_peer_id else ""
        table.add_row(peer.id[:16], f"{peer.name}{marker}", f"{peer.reputation:.2f}")
    return table


def nodes_table(controller: SyncController) -> Table:
    table = Table(title="Nodes", expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta")
    table.add_column("Status", style="green")
    for node in controller.nodes.list():
        table.add_row(node.id[:16], node.name, node.status)
    return table


def workloads_table(controller: SyncController) -> Table:
    table = Table(title="Workloads", expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Progress", justify="right", style="green")
    for workload in controller.workloads.list():
        table.add_row(workload.id[:16], workload.status, f"{workload.progress:.0%}")
    return table


class Dashboard:
    def __init__(self, controller: SyncController):
        self.controller = controller
        self.timeline = deque(maxlen=8)
        self._unsubscribe = []

    def on_store_change(self, change: StoreChange):
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] {change.store} {change.op} {len(change.ids)}")

    def on_controller_change(self, payload: dict):
        if "channel" in payload:
            ts = datetime.now().strftime("%H:%M:%S")
            self.timeline.appendleft(f"[{ts}] {payload['channel']} -> {payload['state'].value}")

    def attach(self):
        for store in (self.controller.peers, self.controller.nodes, self.controller.workloads):
            self._unsubscribe.append(store.changed.subscribe(self.on_store_change))
        self._unsubscribe.append(self.controller.changed.subscribe(self.on_controller_change))

    def detach(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )
        layout["left"].split_column(
            Layout(name="peers"),
            Layout(name="nodes"),
            Layout(name="workloads")
        )
        layout["right"].split_column(
            Layout(name="stats"),
            Layout(name="timeline"),
            Layout(name="chat")
        )

        # Header
        parts = []
        for name, state in self.controller.status().items():
            color = STATE_COLORS.get(state, "white")
            parts.append(f"[{color} bold]{name}: {state.value}[/]")
        error = f" | [red]{self.controller.error}[/]" if self.controller.error else ""
        layout["header"].update(Panel(" | ".join(parts) + error))

        layout["peers"].update(Panel(peers_table(self.controller)))
        layout["nodes"].update(Panel(nodes_table(self.controller)))
        layout["workloads"].update(Panel(workloads_table(self.controller)))

        # Stats
        lines = []
        for name, channel in self.controller.channels.items():
            lines.append(
                f"{name}: events={channel.stats['events_received']} "
                f"reconnects={channel.stats['reconnect_count']}"
            )
        if self.controller.cluster_metrics:
            for key, value in list(self.controller.cluster_metrics.figures.items())[:4]:
                lines.append(f"{key}: {value}")
        layout["stats"].update(Panel("\n".join(lines), title="Channels"))

        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))

        chat = [f"{m.from_name}: {m.content}" for m in list(self.controller.messages)[-6:]]
        layout["chat"].update(Panel("\n".join(chat), title="Chat"))

        return layout

    async def run(self, duration_s: float):
        self.attach()
        self.controller.connect()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s
        try:
            with Live(self.generate_layout(), refresh_per_second=4) as live:
                while loop.time() < deadline:
                    live.update(self.generate_layout())
                    await asyncio.sleep(0.25)
        finally:
            self.detach()
            await self.controller.aclose()

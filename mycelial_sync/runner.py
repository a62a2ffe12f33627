"""
CLI entrypoint for mycelial-sync.
"""
import asyncio
import sys
from typing import Callable

import typer
from loguru import logger
from rich.console import Console

from mycelial_sync.client.controller import SyncController
from mycelial_sync.client.normalizer import parse_node, parse_peer, parse_workload
from mycelial_sync.client.visualizer import Dashboard, nodes_table, peers_table, workloads_table
from mycelial_sync.shared.config import settings
from mycelial_sync.shared.errors import SyncError

app = typer.Typer(help="Mycelial realtime sync client")
console = Console()

COLLECTIONS = {
    "peers": ("p2p_api", "/peers", parse_peer, peers_table),
    "nodes": ("orchestrator_api", "/orchestrator/nodes", parse_node, nodes_table),
    "workloads": ("orchestrator_api", "/orchestrator/workloads", parse_workload, workloads_table),
}


def configure_logging(level: str, sink=sys.stderr) -> None:
    logger.remove()
    logger.add(sink, level=level.upper())


async def wait_open(
    controller: SyncController,
    channel: str,
    timeout_s: float,
    ready: Callable[[], bool] | None = None,
) -> bool:
    """Connect `channel` and wait until it is open and `ready()` holds, or the timeout passes."""
    manager = controller.channels[channel]
    manager.connect()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while loop.time() < deadline:
        if manager.is_open and (ready is None or ready()):
            break
        await asyncio.sleep(0.05)
    return manager.is_open


@app.command()
def sandbox():
    """Start the sandbox node (FastAPI + Uvicorn) for local development."""
    import uvicorn
    configure_logging(settings.LOG_LEVEL)
    typer.echo(f"Starting sandbox node on port {settings.SANDBOX_PORT}...")
    uvicorn.run(
        "mycelial_sync.sandbox.main:app",
        host=settings.SANDBOX_HOST,
        port=settings.SANDBOX_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def watch(duration: float = typer.Option(60.0, help="How long to keep the dashboard open, in seconds")):
    """Mirror peers, nodes and workloads live in a Rich dashboard."""
    # Log lines would tear the live layout apart
    configure_logging("ERROR")

    async def main():
        controller = SyncController(auto_connect=False)
        await Dashboard(controller).run(duration)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


@app.command()
def snapshot(collection: str = typer.Argument(..., help="peers, nodes or workloads")):
    """Fetch one collection over REST and print it."""
    configure_logging(settings.LOG_LEVEL)
    if collection not in COLLECTIONS:
        typer.echo(f"Unknown collection {collection}. Choose from: {', '.join(COLLECTIONS)}")
        raise typer.Exit(1)
    api, endpoint, parse, render = COLLECTIONS[collection]

    async def main():
        controller = SyncController(auto_connect=False)
        loader = getattr(controller, api)
        try:
            entities = await loader.fetch_collection(endpoint, field=collection, parse=parse)
            getattr(controller, collection).replace_all(entities)
        finally:
            await controller.aclose()
        console.print(render(controller))

    try:
        asyncio.run(main())
    except SyncError as e:
        typer.echo(f"Snapshot failed: {e}")
        raise typer.Exit(1)


@app.command()
def chat(
    content: str = typer.Argument(..., help="Message text"),
    to: str = typer.Option(None, help="Direct recipient peer id"),
    room: str = typer.Option(None, help="Room id"),
    timeout: float = typer.Option(5.0, help="Seconds to wait for the channel to open"),
):
    """Send one chat message over the p2p channel."""
    configure_logging(settings.LOG_LEVEL)

    async def main():
        controller = SyncController(auto_connect=False)

        # The echo is tagged with our peer id, which arrives with the /info hydration
        def hydrated() -> bool:
            return controller.local_peer_id is not None or controller.error is not None

        try:
            if not await wait_open(controller, "p2p", timeout, ready=hydrated):
                typer.echo("p2p channel did not open; message kept locally only.")
            message = await controller.send_chat(content, to=to, room_id=room)
            typer.echo(f"{message.from_name}: {message.content}")
        finally:
            await controller.aclose()

    asyncio.run(main())


def _run_workload_command(command: str, *args, timeout: float = 5.0):
    async def main():
        controller = SyncController(auto_connect=False)
        try:
            await wait_open(controller, "orchestrator", timeout)
            workload = await getattr(controller, command)(*args)
            if workload is not None:
                typer.echo(f"{workload.id}: {workload.status} ({workload.progress:.0%})")
        finally:
            await controller.aclose()

    try:
        asyncio.run(main())
    except SyncError as e:
        typer.echo(f"{command} failed: {e}")
        raise typer.Exit(1)


@app.command()
def create(
    name: str = typer.Option(..., help="Workload name"),
    image: str = typer.Option(..., help="Container image to run"),
):
    """Create a workload."""
    configure_logging(settings.LOG_LEVEL)
    _run_workload_command("create_workload", {"name": name, "image": image})


@app.command()
def cancel(workload_id: str):
    """Cancel a workload."""
    configure_logging(settings.LOG_LEVEL)
    _run_workload_command("cancel_workload", workload_id)


@app.command()
def retry(workload_id: str):
    """Retry a failed or cancelled workload."""
    configure_logging(settings.LOG_LEVEL)
    _run_workload_command("retry_workload", workload_id)


@app.command()
def stats():
    """Query the sandbox node for live stats."""
    import httpx
    resp = httpx.get(f"http://{settings.SANDBOX_HOST}:{settings.SANDBOX_PORT}/stats")
    typer.echo(resp.json())


if __name__ == "__main__":
    app()

"""
MODULE OVERVIEW:
The sandbox node's FastAPI application factory.

WHAT IS HAPPENING HERE:
We use a `lifespan` context manager. On startup the dummy data generators
are spawned as background tasks that push every frame through the hub; on
shutdown they are cancelled and awaited. The REST routes mirror the pull
endpoints a real node exposes: bare arrays for peers, wrapped arrays for
the orchestrator collections.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from mycelial_sync.sandbox import websocket
from mycelial_sync.sandbox.dummy_data import get_all_generators, seed_nodes
from mycelial_sync.sandbox.hub import SandboxHub, SandboxState
from mycelial_sync.shared.config import Settings, settings as default_settings

api = APIRouter(prefix="/api")


def get_hub(request: Request) -> SandboxHub:
    return request.app.state.hub


@api.get("/info")
async def info(request: Request):
    state = get_hub(request).state
    return {"peer_id": state.local_peer_id, "name": state.node_name}


@api.get("/peers")
async def peers(request: Request):
    # Some node builds answer with `peer_id` + `display_name` instead of `id` + `name`
    return [
        {
            "peer_id": peer["id"],
            "display_name": peer["name"],
            "reputation": peer["reputation"],
            "addresses": peer.get("addresses", []),
        }
        for peer in get_hub(request).state.peers.values()
    ]


@api.get("/orchestrator/workloads")
async def list_workloads(request: Request):
    return {"workloads": list(get_hub(request).state.workloads.values())}


@api.get("/orchestrator/nodes")
async def list_nodes(request: Request):
    return {"nodes": list(get_hub(request).state.nodes.values())}


@api.get("/orchestrator/metrics")
async def cluster_metrics(request: Request):
    return {"cluster": get_hub(request).state.cluster_metrics()}


@api.post("/orchestrator/workloads", status_code=201)
async def create_workload(request: Request, spec: dict[str, Any] = Body(...)):
    hub = get_hub(request)
    workload = hub.state.create_workload(spec)
    await hub.broadcast({"type": "workload_created", "data": workload})
    return workload


async def _transition(request: Request, workload_id: str, **changes: Any) -> dict:
    hub = get_hub(request)
    workload = hub.state.workloads.get(workload_id)
    if workload is None:
        raise HTTPException(status_code=404, detail=f"unknown workload {workload_id}")
    workload.update(changes)
    await hub.broadcast({"type": "workload_updated", "data": dict(workload)})
    return workload


@api.post("/orchestrator/workloads/{workload_id}/cancel")
async def cancel_workload(request: Request, workload_id: str):
    return await _transition(request, workload_id, status="cancelled")


@api.post("/orchestrator/workloads/{workload_id}/retry")
async def retry_workload(request: Request, workload_id: str):
    return await _transition(request, workload_id, status="pending", progress=0.0)


async def generator_runner(hub: SandboxHub, generator):
    """Consumes a dummy data generator and pushes its frames to every socket."""
    try:
        async for frame in generator:
            await hub.broadcast(frame)
    except asyncio.CancelledError:
        logger.debug(f"Generator cancelled: {generator.__name__}")
    except Exception as e:
        logger.error(f"Generator error: {e}")


def create_app(settings: Settings | None = None, start_generators: bool = True) -> FastAPI:
    settings = settings or default_settings
    state = SandboxState()
    seed_nodes(state)
    hub = SandboxHub(state)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background_tasks = set()
        if start_generators:
            logger.info("Sandbox node starting up...")
            for gen in get_all_generators(
                state,
                settings.SANDBOX_PEER_CHURN_S,
                settings.SANDBOX_NODE_STATUS_S,
                settings.SANDBOX_WORKLOAD_TICK_S,
            ):
                background_tasks.add(asyncio.create_task(generator_runner(hub, gen)))
            logger.info(f"Started {len(background_tasks)} background generators.")

        yield

        logger.info("Sandbox shutting down. Cancelling background tasks...")
        for task in background_tasks:
            task.cancel()
        if background_tasks:
            await asyncio.gather(*background_tasks, return_exceptions=True)
        logger.info("Shutdown complete.")

    app = FastAPI(
        title="Mycelial Sandbox Node",
        description="A development stand-in for a node's REST and WebSocket surface",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api, tags=["Pull"])
    app.include_router(websocket.router, tags=["Push"])

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        return {"status": "ok"}

    @app.get("/stats", tags=["Ops"])
    async def get_stats():
        return hub.get_stats()

    return app


app = create_app()

"""
MODULE OVERVIEW:
The sandbox node's push channel.

WHAT IS HAPPENING HERE:
On connect the client immediately receives a `peers_list`, like a real node.
Client frames are dispatched on their `type`. Chat is published to every
OTHER socket: a node never loops a sender's own broadcast back to it, which
is why the sync client echoes its own messages locally.
"""
import json
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from loguru import logger

from mycelial_sync.sandbox.hub import SandboxHub

router = APIRouter()


def extract_client_id(client_id: str | None) -> str:
    """Use the caller's client_id, or generate a short readable one like 'client-a3f2'."""
    if client_id:
        return client_id
    return f"client-{str(uuid.uuid4())[:4]}"


async def handle_client_message(hub: SandboxHub, client_id: str, message: dict):
    msg_type = message.get("type")

    if msg_type == "subscribe":
        hub.subscribe(client_id, str(message.get("topic")))

    elif msg_type == "send_chat":
        content = message.get("content")
        if not isinstance(content, str):
            await hub.send_to(client_id, {"type": "error", "message": "send_chat requires content"})
            return
        hub.state.message_count += 1
        await hub.broadcast(
            {
                "type": "chat_message",
                "id": str(uuid.uuid4()),
                "from": client_id,
                "from_name": f"Peer-{client_id[:8]}",
                "to": message.get("to"),
                "room_id": message.get("room_id"),
                "content": content,
                "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            },
            exclude=client_id,
        )

    elif msg_type == "get_peers":
        await hub.send_to(client_id, hub.peers_list_frame())

    elif msg_type == "get_stats":
        stats = hub.get_stats()
        await hub.send_to(
            client_id,
            {
                "type": "stats",
                "peer_count": stats["peer_count"],
                "message_count": stats["message_count"],
                "uptime_seconds": int(stats["uptime_s"]),
            },
        )

    elif isinstance(msg_type, str) and msg_type.startswith("workload_"):
        # REST already applied the command; the socket copy is informational
        logger.info(f"client_id={client_id} event=command type={msg_type} id={message.get('workloadId')}")

    else:
        logger.warning(f"client_id={client_id} event=unknown_message type={msg_type}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, client_id: str | None = Query(None)):
    hub: SandboxHub = websocket.app.state.hub
    cid = extract_client_id(client_id)
    await hub.connect_ws(cid, websocket)
    await hub.send_to(cid, hub.peers_list_frame())

    try:
        while True:
            text_data = await websocket.receive_text()
            try:
                message = json.loads(text_data)
            except json.JSONDecodeError:
                logger.warning(f"client_id={cid} event=bad_frame raw={text_data[:60]}")
                continue
            if isinstance(message, dict):
                await handle_client_message(hub, cid, message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect_ws(cid)

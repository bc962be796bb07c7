"""
WebSocket endpoint for real-time alert delivery (Redis pub/sub pattern).

AlertPublisher publishes every new alert on alerts:{store_id}; this endpoint
relays that channel to connected store dashboards.
"""

import asyncio
from uuid import UUID

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError

router = APIRouter()
logger = structlog.get_logger()

HEARTBEAT_SECONDS = 30


@router.websocket("/ws/alerts/{store_id}")
async def websocket_alerts(websocket: WebSocket, store_id: UUID):
    """
    Stream a store's alerts.

    Connect: ws://host/ws/alerts/<store_id>

    Messages sent to client:
        {"type": "alert", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    await websocket.accept()

    channel = f"alerts:{store_id}"
    pubsub = websocket.app.state.redis.pubsub()
    await pubsub.subscribe(channel)

    async def listen_redis():
        async for message in pubsub.listen():
            if message["type"] == "message":
                data = message["data"]
                await websocket.send_text(data.decode() if isinstance(data, bytes) else data)

    async def send_heartbeat():
        while True:
            await asyncio.sleep(HEARTBEAT_SECONDS)
            await websocket.send_json({"type": "heartbeat", "payload": {}})

    try:
        await asyncio.gather(listen_redis(), send_heartbeat())
    except (WebSocketDisconnect, RuntimeError):
        logger.info("ws.alerts_disconnected", store_id=str(store_id))
    except RedisError as exc:
        logger.warning("ws.alerts_redis_error", store_id=str(store_id), error=str(exc))
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()

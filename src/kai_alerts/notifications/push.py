"""
Real-time push channel for KAI Alerts.
Clients connect over WebSocket and subscribe to topics such as
`user:<push_id>`, `region:<name>` and `broadcast`.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Set

from aiohttp import WSMsgType, web
from aiohttp.web import Request

logger = logging.getLogger(__name__)

BROADCAST_TOPIC = "broadcast"


class PushError(Exception):
    """Push publish error."""

    pass


def user_topic(push_id: str) -> str:
    return f"user:{push_id}"


def region_topic(region: str) -> str:
    return f"region:{region}"


class PushChannel(ABC):
    """Fire-and-forget topic publisher."""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        """
        Publish a payload to a topic.

        Raises:
            PushError: If the payload could not be published
        """


class WebSocketPushHub(PushChannel):
    """Topic-based publisher over aiohttp WebSockets."""

    def __init__(self, heartbeat: float = 30.0):
        self.heartbeat = heartbeat
        self._topics: Dict[web.WebSocketResponse, Set[str]] = {}
        self.messages_published = 0

    @property
    def client_count(self) -> int:
        return len(self._topics)

    def subscribe(self, ws: web.WebSocketResponse, topics: Iterable[str]) -> None:
        self._topics.setdefault(ws, {BROADCAST_TOPIC}).update(t for t in topics if t)

    def unsubscribe(self, ws: web.WebSocketResponse, topics: Iterable[str]) -> None:
        if ws in self._topics:
            self._topics[ws].difference_update(topics)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            message = json.dumps({
                "topic": topic,
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }, default=str)
        except (TypeError, ValueError) as e:
            raise PushError(f"Failed to serialize push payload for {topic}: {e}") from e

        disconnected = set()
        receivers = 0
        for ws, topics in list(self._topics.items()):
            if topic not in topics:
                continue
            if ws.closed:
                disconnected.add(ws)
                continue
            try:
                await ws.send_str(message)
                receivers += 1
            except ConnectionResetError:
                disconnected.add(ws)

        for ws in disconnected:
            self._topics.pop(ws, None)

        self.messages_published += 1
        logger.debug(f"Published to {topic} ({receivers} receivers)")

    async def websocket_handler(self, request: Request) -> web.WebSocketResponse:
        """Handle WebSocket connections; initial topics come from ?topics=a,b."""
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        initial = [t.strip() for t in request.query.get("topics", "").split(",")]
        self.subscribe(ws, initial)
        logger.info(f"Push client connected. Total clients: {self.client_count}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError as e:
                        logger.warning("Push client sent invalid JSON: %s", e)
                        continue
                    if not isinstance(data, dict):
                        continue
                    await self._handle_client_message(ws, data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
        finally:
            self._topics.pop(ws, None)
            logger.info(f"Push client disconnected. Total clients: {self.client_count}")

        return ws

    async def _handle_client_message(self, ws: web.WebSocketResponse, data: Dict[str, Any]) -> None:
        message_type = data.get("type")
        topics = data.get("topics") or ([data["topic"]] if data.get("topic") else [])

        if message_type == "ping":
            await ws.send_str(json.dumps({"type": "pong"}))
        elif message_type == "subscribe":
            self.subscribe(ws, topics)
            await ws.send_str(json.dumps({"type": "subscribed", "topics": sorted(self._topics[ws])}))
        elif message_type == "unsubscribe":
            self.unsubscribe(ws, topics)

    async def close(self) -> None:
        for ws in list(self._topics):
            await ws.close()
        self._topics.clear()

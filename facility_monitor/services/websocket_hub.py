"""
Channel subscriptions and broadcasts for live dashboard updates.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from fastapi import WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

CHANNELS = (
    "power-data",
    "environmental-data",
    "settings",
    "agent-notifications",
    "agent-messages",
)


class WebSocketHub:
    """
    Tracks which clients listen on which channel.

    A client is anything with an async send_json(message) method, normally
    a FastAPI WebSocket.
    """

    def __init__(self, channels=CHANNELS):
        self.subscriptions: Dict[str, Set[Any]] = {channel: set() for channel in channels}

    def valid_channels(self) -> List[str]:
        return list(self.subscriptions)

    def subscribe(self, client, channel: str) -> bool:
        subscribers = self.subscriptions.get(channel)
        if subscribers is None:
            return False
        subscribers.add(client)
        logger.info("Client subscribed to %s, total subscribers: %s", channel, len(subscribers))
        return True

    def unsubscribe(self, client, channel: str) -> bool:
        subscribers = self.subscriptions.get(channel)
        if subscribers is None or client not in subscribers:
            return False
        subscribers.discard(client)
        logger.info("Client unsubscribed from %s, remaining subscribers: %s", channel, len(subscribers))
        return True

    def remove_client(self, client) -> None:
        for channel, subscribers in self.subscriptions.items():
            if client in subscribers:
                subscribers.discard(client)
                logger.info("Client removed from %s, remaining subscribers: %s", channel, len(subscribers))

    def subscriber_count(self, channel: str) -> int:
        return len(self.subscriptions.get(channel, ()))

    async def broadcast(self, channel: str, data: Any) -> int:
        """
        Send {"type": channel, "data": data} to every subscriber of a channel.

        Clients whose send fails are removed from all channels.

        Returns:
            Number of clients the message was delivered to
        """
        subscribers = self.subscriptions.get(channel)
        if not subscribers:
            logger.debug("No subscribers for %s, broadcast skipped", channel)
            return 0

        message = jsonable_encoder({"type": channel, "data": data})
        delivered = 0
        failed = []
        for client in list(subscribers):
            try:
                await client.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.warning("Error broadcasting %s to client: %s", channel, e)
                failed.append(client)
        for client in failed:
            self.remove_client(client)

        logger.info("Broadcast %s to %s clients (%s failed)", channel, delivered, len(failed))
        return delivered

    async def broadcast_agent_notification(self, notification: Any) -> int:
        return await self.broadcast("agent-notifications", {
            "type": "agent-notification",
            "payload": notification,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def broadcast_agent_message(self, message: Any) -> int:
        return await self.broadcast("agent-messages", {
            "type": "agent-message",
            "payload": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })


hub = WebSocketHub()

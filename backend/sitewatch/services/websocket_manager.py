"""Realtime broadcaster - pushes monitoring updates and alerts to live clients.

The scheduler only sees ``publish(update)``, which never blocks: delivery is
fire-and-forget and failing clients are dropped.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket

from .records import CheckResult, FiredAlert, Target

logger = logging.getLogger(__name__)

MONITORING_UPDATE = "monitoring-update"
ALERT = "alert"

# A client that cannot take a message within this many seconds is dropped
SEND_TIMEOUT_SECONDS = 5


def monitoring_update(target: Target, result: CheckResult) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "targetId": target.id,
        "targetName": target.name,
        "status": result.status,
        "responseTimeMs": result.response_time_ms,
        "timestamp": result.checked_at.isoformat() + "Z",
    }
    if result.tls is not None:
        data["tlsInfo"] = {
            "valid": result.tls.valid,
            "daysUntilExpiry": result.tls.days_until_expiry,
            "grade": result.tls.grade,
        }
    if result.performance_score is not None:
        data["performanceScore"] = result.performance_score
    return {"event": MONITORING_UPDATE, "ownerId": target.owner_id, "data": data}


def alert_update(target: Target, alert: FiredAlert) -> Dict[str, Any]:
    return {
        "event": ALERT,
        "ownerId": target.owner_id,
        "data": {
            "targetId": alert.target_id,
            "targetName": target.name,
            "alertType": alert.alert_type,
            "message": alert.message,
            "severity": alert.severity,
        },
    }


class Broadcaster(Protocol):
    def publish(self, update: Dict[str, Any]) -> None:
        ...


class NullBroadcaster:
    """Used when no live transport is attached."""

    def publish(self, update: Dict[str, Any]) -> None:
        logger.debug(f"No broadcaster attached, dropping {update.get('event')} update")


@dataclass(eq=False)
class ClientConnection:
    websocket: WebSocket
    owner_id: Optional[int] = None
    target_ids: Set[int] = field(default_factory=set)

    def wants(self, update: Dict[str, Any]) -> bool:
        """Clients see their own targets, or any target they subscribed to.

        A client registered without an owner sees everything.
        """
        if self.owner_id is None:
            return True
        if update.get("ownerId") == self.owner_id:
            return True
        return update.get("data", {}).get("targetId") in self.target_ids


class ConnectionManager:
    """Manages WebSocket connections and broadcasts updates to them."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.active_connections: Dict[WebSocket, ClientConnection] = {}
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket, owner_id: Optional[int] = None):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections[websocket] = ClientConnection(websocket, owner_id=owner_id)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")
        await websocket.send_text(json.dumps({
            "event": "connection-status",
            "data": {"connected": True, "ownerId": owner_id, "message": "Real-time monitoring connected"},
        }))

    async def disconnect(self, websocket: WebSocket):
        """Remove a disconnected WebSocket."""
        async with self._lock:
            self.active_connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def handle_message(self, websocket: WebSocket, message: Dict[str, Any]):
        """Apply a client ``subscribe``/``unsubscribe`` request."""
        client = self.active_connections.get(websocket)
        if client is None:
            return
        action = message.get("action")
        try:
            target_id = int(message.get("target_id"))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring WebSocket message without a valid target_id: {message}")
            return
        if action == "subscribe":
            client.target_ids.add(target_id)
        elif action == "unsubscribe":
            client.target_ids.discard(target_id)

    def publish(self, update: Dict[str, Any]) -> None:
        """Schedule a broadcast and return immediately."""
        if not self.active_connections:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.broadcast(update))
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {update.get('event')} update")
            return
        # Hold a reference until the task finishes
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def broadcast(self, update: Dict[str, Any]):
        """Send an update to every interested client, removing any that fail."""
        async with self._lock:
            clients = [c for c in self.active_connections.values() if c.wants(update)]
        if not clients:
            return

        message_json = json.dumps(
            {"event": update.get("event"), "data": update.get("data")},
            default=str,
        )

        async def send(client: ClientConnection) -> Optional[WebSocket]:
            try:
                await asyncio.wait_for(client.websocket.send_text(message_json), timeout=self.send_timeout)
                return None
            except Exception as e:
                logger.debug(f"Failed to send to WebSocket: {e}")
                return client.websocket

        failed = [ws for ws in await asyncio.gather(*[send(c) for c in clients]) if ws is not None]
        if failed:
            async with self._lock:
                for ws in failed:
                    self.active_connections.pop(ws, None)

    @property
    def connection_count(self) -> int:
        """Return the number of active connections."""
        return len(self.active_connections)


# Global instance
websocket_manager = ConnectionManager()

"""
Best-effort websocket event channel.

Any connected client receives every event. Delivery failures drop the
client and are logged; they never propagate to the publisher.
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from dashboard.logging_utils import get_logger
from shared.schemas import Event


class EventHub:
    def __init__(self):
        self._clients: Dict[str, WebSocket] = {}
        self.log = get_logger()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def register(self, ws: WebSocket) -> str:
        client_id = str(uuid.uuid4())
        self._clients[client_id] = ws
        self.log.info("ws_connect", client_id=client_id, total=len(self._clients))
        return client_id

    def unregister(self, client_id: str, reason: str = "normal") -> None:
        if self._clients.pop(client_id, None) is not None:
            self.log.info("ws_disconnect", client_id=client_id, reason=reason, total=len(self._clients))

    async def publish(self, event_type: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> int:
        """Send an event to all clients; returns how many received it."""
        txt = json.dumps(Event(type=event_type, job_id=job_id, payload=payload).model_dump(), default=str)
        to_remove: List[str] = []
        delivered = 0
        for cid, ws in list(self._clients.items()):
            try:
                await ws.send_text(txt)
                delivered += 1
            except Exception as exc:
                self.log.warning("ws_send_failed", client_id=cid, error=str(exc))
                to_remove.append(cid)
        for cid in to_remove:
            self.unregister(cid, reason="send_failed")
        return delivered

    async def serve(self, ws: WebSocket) -> None:
        """Hold one client connection open until it disconnects."""
        await ws.accept()
        client_id = self.register(ws)
        reason = "receive_failed"
        try:
            while True:
                data = await ws.receive_text()
                self.log.debug("ws_recv", client_id=client_id, size=len(data))
        except WebSocketDisconnect:
            reason = "normal"
        finally:
            self.unregister(client_id, reason=reason)

    async def close_all(self) -> None:
        for cid, ws in list(self._clients.items()):
            try:
                await ws.close()
            except RuntimeError as exc:
                self.log.debug("ws_close_failed", client_id=cid, error=str(exc))
        self._clients.clear()

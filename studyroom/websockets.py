from typing import Dict, Set
from fastapi import WebSocket
from collections import defaultdict

from .app_logging import get_logger

logger = get_logger("studyroom.ws")


class WSManager:
    """Pushes attendance and notification events to open dashboards.

    Students (and their parents' screens) subscribe per student id; the admin
    attendance board subscribes to everything.
    """

    def __init__(self):
        self.student_connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.admin_connections: Set[WebSocket] = set()

    async def connect_student(self, student_id: str, websocket: WebSocket):
        await websocket.accept()
        self.student_connections[student_id].add(websocket)

    async def connect_admin(self, websocket: WebSocket):
        await websocket.accept()
        self.admin_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        for student_id, conns in list(self.student_connections.items()):
            conns.discard(websocket)
            if not conns:
                del self.student_connections[student_id]
        self.admin_connections.discard(websocket)

    async def _send(self, sockets, message: dict):
        dead = []
        for ws in list(sockets):
            try:
                await ws.send_json(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            logger.info("dropping closed websocket")
            self.disconnect(ws)

    async def send_to_student(self, student_id: str, message: dict):
        await self._send(self.student_connections.get(student_id, ()), message)

    async def send_to_admins(self, message: dict):
        await self._send(self.admin_connections, message)

    async def broadcast(self, student_id: str, message: dict):
        await self.send_to_student(student_id, message)
        await self.send_to_admins(message)


ws_manager = WSManager()

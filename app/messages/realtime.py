"""
Relais temps réel (WebSocket)

Registre propre au processus : rempli à la connexion, purgé à la déconnexion.
Il ne survit pas à un redémarrage et n'est pas partagé entre plusieurs
instances ; un déploiement multi-instances devra le déplacer vers un
stockage partagé (Redis pub/sub par exemple).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from fastapi import WebSocket
from pydantic import BaseModel, Field

from app.utils.mongodb_utils import serialize_document

logger = logging.getLogger(__name__)


class WebSocketMessage(BaseModel):
    type: str
    data: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    def __init__(self):
        self.active_users: Dict[str, Set[WebSocket]] = {}
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.socket_users: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self.active_users.setdefault(user_id, set()).add(websocket)
        self.socket_users[websocket] = user_id
        logger.info(f"🔌 Connexion WebSocket : user={user_id} ({len(self.active_users)} utilisateur(s) actif(s))")

    def disconnect(self, websocket: WebSocket) -> None:
        user_id = self.socket_users.pop(websocket, None)
        if user_id is not None:
            sockets = self.active_users.get(user_id, set())
            sockets.discard(websocket)
            if not sockets:
                self.active_users.pop(user_id, None)
        for room in list(self.rooms):
            self.rooms[room].discard(websocket)
            if not self.rooms[room]:
                del self.rooms[room]
        logger.info(f"🔌 Déconnexion WebSocket : user={user_id}")

    def join(self, room: str, websocket: WebSocket) -> None:
        self.rooms.setdefault(room, set()).add(websocket)

    def leave(self, room: str, websocket: WebSocket) -> None:
        if room in self.rooms:
            self.rooms[room].discard(websocket)
            if not self.rooms[room]:
                del self.rooms[room]

    def active_user_ids(self) -> List[str]:
        return list(self.active_users)

    def is_online(self, user_id) -> bool:
        return str(user_id) in self.active_users

    async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json(payload)
            return True
        except (RuntimeError, ConnectionError) as e:
            logger.warning(f"⚠️ Envoi WebSocket impossible, socket retirée : {e}")
            self.disconnect(websocket)
            return False

    async def broadcast_to_room(self, room: str, event: str, data: Dict[str, Any]) -> int:
        """Diffusion « au mieux » : aucun accusé, aucune relance. Retourne le nombre de sockets atteintes."""
        payload = WebSocketMessage(type=event, data=serialize_document(data)).model_dump(mode="json")
        delivered = 0
        for websocket in list(self.rooms.get(room, ())):
            if await self._send(websocket, payload):
                delivered += 1
        return delivered

    async def send_to_user(self, user_id, event: str, data: Dict[str, Any]) -> int:
        payload = WebSocketMessage(type=event, data=serialize_document(data)).model_dump(mode="json")
        delivered = 0
        for websocket in list(self.active_users.get(str(user_id), ())):
            if await self._send(websocket, payload):
                delivered += 1
        return delivered


manager = ConnectionManager()

import json
from typing import Dict, Set
from fastapi import WebSocket
from config import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from exceptions import ValidationError
import logging

logger = logging.getLogger(__name__)

NEW_TRADE = "new_trade"
LANGUAGE_CHANGED = "language_changed"


class ConnectionManager:
    """
    Tracks each user's open notification sockets and pushes UI events
    (start a new trade entry, language changed) to all of them.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, int] = {}
        self.user_connections: Dict[int, Set[WebSocket]] = {}
        self.languages: Dict[int, str] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.active_connections[websocket] = user_id
        self.user_connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"WebSocket connected for user {user_id}. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        user_id = self.active_connections.pop(websocket, None)
        if user_id is None:
            return

        sockets = self.user_connections.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.user_connections[user_id]
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    def language_for(self, user_id: int) -> str:
        return self.languages.get(user_id, DEFAULT_LANGUAGE)

    def set_language(self, user_id: int, language: str) -> str:
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError(f"Unsupported language {language!r}")
        self.languages[user_id] = language
        return language

    async def send_personal_message(self, message: str, websocket: WebSocket):
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error(f"Error sending message: {e}")
            self.disconnect(websocket)

    async def broadcast_to_user(self, user_id: int, message: str) -> int:
        """Send to every socket the user has open; returns how many got it."""
        delivered = 0
        disconnected = []
        for websocket in self.user_connections.get(user_id, set()).copy():
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.error(f"Error notifying user {user_id}: {e}")
                disconnected.append(websocket)

        # Clean up disconnected websockets
        for ws in disconnected:
            self.disconnect(ws)
        return delivered

    async def notify_new_trade(self, user_id: int) -> int:
        return await self.broadcast_to_user(user_id, json.dumps({"type": NEW_TRADE}))

    async def notify_language(self, user_id: int, language: str) -> int:
        self.set_language(user_id, language)
        return await self.broadcast_to_user(
            user_id, json.dumps({"type": LANGUAGE_CHANGED, "language": language})
        )

    async def handle_message(self, websocket: WebSocket, raw: str):
        """React to a message a client sent over its socket."""
        user_id = self.active_connections.get(websocket)
        if user_id is None:
            return

        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_personal_message(json.dumps({"type": "error", "message": "Invalid JSON"}), websocket)
            return

        message_type = message.get("type") if isinstance(message, dict) else None
        if message_type == NEW_TRADE:
            await self.notify_new_trade(user_id)
        elif message_type == LANGUAGE_CHANGED:
            try:
                await self.notify_language(user_id, message.get("language", ""))
            except ValidationError as e:
                await self.send_personal_message(json.dumps({"type": "error", "message": str(e)}), websocket)
        else:
            await self.send_personal_message(
                json.dumps({"type": "error", "message": f"Unknown message type {message_type!r}"}),
                websocket,
            )


manager = ConnectionManager()

"""
=============================================================================
DX - Notificaciones en Tiempo Real (Socket.IO)
=============================================================================
Cada usuario autenticado se une a la sala user_<id>. Las rutas emiten
eventos a esa sala DESPUÉS del commit (un rollback nunca se notifica).

Eventos: challenge_received, challenge_accepted, challenge_declined,
match_result, appeal_filed, match_disbursed, withdrawal_processed
=============================================================================
"""

import logging
import time
from typing import Any, Dict, Optional
from uuid import UUID

import socketio
from socketio.exceptions import ConnectionRefusedError as SocketRefused
from fastapi import FastAPI

from .config import settings
from .errors import AuthError
from .security import user_id_from_token

logger = logging.getLogger(__name__)


class SocketConfig:
    """Configuración del servidor de WebSockets."""

    PING_INTERVAL = 25
    PING_TIMEOUT = 20


def _cors_setting():
    origins = settings.cors_origin_list
    return "*" if origins == ["*"] else origins


sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=_cors_setting(),
    ping_timeout=SocketConfig.PING_TIMEOUT,
    ping_interval=SocketConfig.PING_INTERVAL,
)


def user_room(user_id: Any) -> str:
    return f"user_{user_id}"


# =============================================================================
# HANDLERS DE EVENTOS
# =============================================================================

@sio.event
async def connect(sid: str, environ: dict, auth: Optional[dict] = None):
    """
    Requiere el JWT en auth={"token": ...}. Rechaza la conexión si falta
    o no es válido.
    """
    token = (auth or {}).get("token")
    if not token:
        logger.info("[WS] Conexión %s rechazada: sin token", sid)
        raise SocketRefused("Access token required")
    try:
        user_id = user_id_from_token(token)
    except AuthError as e:
        logger.info("[WS] Conexión %s rechazada: %s", sid, e.message)
        raise SocketRefused(e.message)

    await sio.save_session(sid, {"user_id": str(user_id)})
    await sio.enter_room(sid, user_room(user_id))
    logger.info("[WS] %s conectado como %s", sid, user_id)

    await sio.emit("connected", {"sid": sid, "server_time": time.time()}, room=sid)


@sio.event
async def disconnect(sid: str):
    logger.info("[WS] Desconexión: %s", sid)


async def notify_user(user_id: UUID, event: str, payload: Dict[str, Any]) -> None:
    """Emite a todas las conexiones del usuario. Los fallos solo se registran."""
    try:
        await sio.emit(event, payload, room=user_room(user_id))
    except Exception:
        logger.exception("[WS] No se pudo emitir %s a %s", event, user_id)


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(app: FastAPI) -> socketio.ASGIApp:
    """Socket.IO envuelve a FastAPI: /socket.io va al servidor WS, el resto a la API."""
    return socketio.ASGIApp(sio, other_asgi_app=app)

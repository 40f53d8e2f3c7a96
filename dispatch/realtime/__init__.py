"""
Dispatch Real-time Module
=========================

Socket.IO server, the event bridge from the dispatch ``EventBus`` and the
inbound location handler.

Usage in FastAPI app startup::

    from dispatch.realtime import install_event_bridge, socket_app
    app.mount("/ws", socket_app)
    unsubscribe = install_event_bridge()
"""

from __future__ import annotations

from .socketServer import (
    broadcast_to_request,
    close_redis,
    get_redis,
    install_event_bridge,
    send_to_technician,
    sio,
    socket_app,
)

# Importing handlers registers the Socket.IO event listeners
from . import handlers  # noqa: F401

__all__ = [
    "sio",
    "socket_app",
    "broadcast_to_request",
    "send_to_technician",
    "install_event_bridge",
    "get_redis",
    "close_redis",
    "handlers",
]

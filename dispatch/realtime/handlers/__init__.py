"""
Dispatch Real-time Handlers
===========================

Importing this module registers the inbound Socket.IO event handlers with
the shared server instance.
"""

from __future__ import annotations

from . import locationHandler

__all__ = [
    "locationHandler",
]

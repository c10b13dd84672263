"""
API module for TaskSync.

This module provides the HTTP and WebSocket surface:
- Storage endpoints (namespaced per identity)
- Sharing endpoints (invite, accept, members, leave, propagate, shared view)
- The /ws real-time endpoint
"""

from .http_server import SERVICE_KEY, create_http_app

__all__ = ["SERVICE_KEY", "create_http_app"]

"""
Proxy Package
=============

This package implements the transparent HTTP proxy that forwards client
requests to the fixed upstream API host.

Main Components:
----------------
- headers.py: request/response blocklists and credential injection
- routes.py: proxy handler and router builder

Usage:
------
    from relay.app.proxy import build_proxy_router
    app.include_router(build_proxy_router(settings.profile.routes))
"""

from .routes import build_proxy_router

__all__ = ["build_proxy_router"]

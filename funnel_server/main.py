"""Entry point for ASGI servers.

Exposes the unified backend app so ``uvicorn funnel_server.main:app`` works
without importing the composition module directly.
"""

from .backend import app  # noqa: F401

__all__ = ["app"]

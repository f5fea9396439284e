"""
asgi.py -- ASGI entry point for chatgate.

Deployment tooling imports `asgi:app`; tests import api.main directly.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

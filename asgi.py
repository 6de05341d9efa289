"""
asgi.py -- ASGI entry point for the Minimarket auth API.

The back-office UI is served separately and talks to this app over /api/v1.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

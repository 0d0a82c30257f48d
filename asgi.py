"""
asgi.py -- ASGI entry point for sanctum.

Kept separate from api/main.py so the server command never changes when the
application assembly does.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

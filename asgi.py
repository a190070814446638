"""
asgi.py -- ASGI entry point for the CCM portal backend.

The front-end is served separately; this module only re-exports the API app
so process managers have one stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

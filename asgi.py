"""
asgi.py -- ASGI entry point for the store accounts service.

Catalog routers mount here next to the accounts API, so api/main.py stays
independent of any catalog code.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

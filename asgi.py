"""
asgi.py -- ASGI entry point for TenantGate.

api/main.py builds the app; this module only exposes it under a stable
import path for process managers.

Run with:  uvicorn asgi:app --workers 4
"""

from api.main import app

__all__ = ["app"]

"""
asgi.py -- ASGI entry point for the ClinicConnect auth service.

api/main.py assembles the application; this module only exposes it under a
stable import path for the server.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]

"""Codified API route modules.

Each module exports a `router` object (APIRouter instance) included by
codified.web.app.
"""

from codified.web.routes import admin, extractions, health, library

__all__ = ["admin", "extractions", "health", "library"]

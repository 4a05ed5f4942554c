"""HTTP API"""

from .app import app, get_app_state

__all__ = ["app", "get_app_state"]

"""HTTP and websocket surface for observing and controlling runs."""

from .api import create_app

__all__ = ["create_app"]

"""API module: application factory and HTTP surface."""

from trustgate.api.app import create_app

__all__ = ["create_app"]

"""HTTP surface for dataport."""

from dataport.api.server import create_app

__all__ = ["create_app"]

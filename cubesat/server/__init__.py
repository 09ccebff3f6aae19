"""HTTP block server for cubesat replicas."""

from .app import create_app

__all__ = ["create_app"]

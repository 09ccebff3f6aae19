"""Content-addressed network collaborators.

Blocks are JSON mappings addressed by the sha256 of their canonical form.
"""

from .base import Network
from .http import HTTPNetwork
from .local import LocalNetwork

__all__ = ["Network", "HTTPNetwork", "LocalNetwork"]

"""Append-only, content-addressed operation log.

Provides the history that replicas exchange and replay into their local
document stores.
"""

from .entry import DocumentWrite, LogEntry, Tombstone, operation_for
from .log import OpLog

__all__ = ["DocumentWrite", "LogEntry", "OpLog", "Tombstone", "operation_for"]

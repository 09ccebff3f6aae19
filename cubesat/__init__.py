"""cubesat: a replicated document store.

Each replica keeps a local, queryable document store and an append-only,
content-addressed operation log. Replicas converge by joining each other's
logs and replaying unseen operations.
"""

from .config import Config, load_config
from .docstore import DocumentStore
from .errors import (
    CorruptContent,
    CubeError,
    InvalidDocument,
    InvalidQuery,
    MissingIdentifier,
    MissingRevision,
    NetworkUnavailable,
    NoFingerprintYet,
    NotFound,
    NotLoadable,
    RevisionConflict,
)
from .network import HTTPNetwork, LocalNetwork, Network
from .oplog import LogEntry, OpLog
from .replicated import Address, JoinResult, ReplicatedStore

__version__ = "0.1.0"

__all__ = [
    "Address",
    "Config",
    "CorruptContent",
    "CubeError",
    "DocumentStore",
    "HTTPNetwork",
    "InvalidDocument",
    "InvalidQuery",
    "JoinResult",
    "LocalNetwork",
    "LogEntry",
    "MissingIdentifier",
    "MissingRevision",
    "Network",
    "NetworkUnavailable",
    "NoFingerprintYet",
    "NotFound",
    "NotLoadable",
    "OpLog",
    "ReplicatedStore",
    "RevisionConflict",
    "load_config",
]

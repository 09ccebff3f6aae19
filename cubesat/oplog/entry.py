"""Log entry record and its operation variants."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..errors import CorruptContent, InvalidDocument
from ..hashing import content_hash


@dataclass
class LogEntry:
    """A single immutable entry in the operation log.

    ``hash`` is the content fingerprint of the identity fields (everything
    except the local bookkeeping timestamps), so the same logical entry
    produced on two replicas collapses to one on merge.
    """

    hash: str
    log_id: str
    lamport_ts: int
    node_id: str
    payload: dict[str, Any]
    next: list[str]
    created_at: datetime
    published_at: datetime | None = None

    @classmethod
    def create(
        cls,
        log_id: str,
        lamport_ts: int,
        node_id: str,
        payload: dict[str, Any],
        next: list[str],
    ) -> "LogEntry":
        """Build a new entry and compute its fingerprint."""
        entry = cls(
            hash="",
            log_id=log_id,
            lamport_ts=lamport_ts,
            node_id=node_id,
            payload=payload,
            next=sorted(next),
            created_at=datetime.now(),
        )
        entry.hash = content_hash(entry.to_block())
        return entry

    def to_block(self) -> dict[str, Any]:
        """Identity fields, as published to the network."""
        return {
            "log_id": self.log_id,
            "lamport_ts": self.lamport_ts,
            "node_id": self.node_id,
            "payload": self.payload,
            "next": self.next,
        }

    @classmethod
    def from_block(cls, block: dict[str, Any]) -> "LogEntry":
        """Rebuild an entry from a published block.

        Raises:
            CorruptContent: The block is not a well-formed log entry.
        """
        try:
            return cls.create(
                log_id=block["log_id"],
                lamport_ts=block["lamport_ts"],
                node_id=block["node_id"],
                payload=block["payload"],
                next=block["next"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptContent(f"Block is not a log entry: {e}") from e

    def verify(self) -> bool:
        """Check that ``hash`` matches the content."""
        try:
            return self.hash == content_hash(self.to_block())
        except (TypeError, ValueError):
            return False

    @property
    def operation(self) -> "DocumentWrite | Tombstone":
        return operation_for(self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "hash": self.hash,
            **self.to_block(),
            "created_at": self.created_at.isoformat(),
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        """Create from dictionary."""
        return cls(
            hash=data["hash"],
            log_id=data["log_id"],
            lamport_ts=data["lamport_ts"],
            node_id=data["node_id"],
            payload=data["payload"],
            next=list(data["next"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            published_at=(
                datetime.fromisoformat(data["published_at"])
                if data.get("published_at")
                else None
            ),
        )


@dataclass(frozen=True)
class DocumentWrite:
    """A create or update: the full document at its new revision."""

    doc: dict[str, Any]

    @property
    def doc_id(self) -> str:
        return self.doc["_id"]

    @property
    def rev(self) -> str:
        return self.doc["_rev"]


@dataclass(frozen=True)
class Tombstone:
    """A deletion of ``doc_id`` at revision ``rev``."""

    doc_id: str
    rev: str

    def to_payload(self) -> dict[str, Any]:
        return {"_id": self.doc_id, "_rev": self.rev, "_deleted": True}


def operation_for(payload: Any) -> DocumentWrite | Tombstone:
    """Classify a bare log payload.

    Raises:
        InvalidDocument: The payload is not a document carrying _id and _rev.
    """
    if not isinstance(payload, dict):
        raise InvalidDocument(f"Log payload must be an object, got {type(payload).__name__}.")
    doc_id, rev = payload.get("_id"), payload.get("_rev")
    if not (isinstance(doc_id, str) and doc_id and isinstance(rev, str) and rev):
        raise InvalidDocument("Log payload requires both _id and _rev as strings.")

    if payload.get("_deleted"):
        return Tombstone(doc_id=payload["_id"], rev=payload["_rev"])
    return DocumentWrite(doc=payload)

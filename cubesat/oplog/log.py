"""Content-addressed, append-only operation log.

Entries link to their predecessors by fingerprint and carry Lamport
timestamps, so logs from replicas that were apart for a long time can be
joined into one causally consistent history.
"""

import json
import logging
import sqlite3
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ..errors import CorruptContent
from ..hashing import content_hash
from ..network import Network
from .entry import LogEntry

logger = logging.getLogger(__name__)

MANIFEST_TYPE = "cubesat/log"

# Schema for the operation log
OPLOG_SCHEMA = """
-- Operation log: append-only, identified by content hash
CREATE TABLE IF NOT EXISTS oplog (
    hash TEXT PRIMARY KEY,
    log_id TEXT NOT NULL,
    lamport_ts INTEGER NOT NULL,
    node_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    next TEXT NOT NULL,
    created_at TEXT NOT NULL,
    published_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_oplog_order ON oplog(lamport_ts, node_id, hash);
CREATE INDEX IF NOT EXISTS idx_oplog_published ON oplog(published_at);

-- Entries whose payload can never be applied to a document store
CREATE TABLE IF NOT EXISTS rejected (
    hash TEXT PRIMARY KEY,
    reason TEXT NOT NULL,
    rejected_at TEXT NOT NULL
);
"""

_ENTRY_COLUMNS = (
    "hash, log_id, lamport_ts, node_id, payload, next, created_at, published_at"
)


class OpLog:
    """Append-only log of document operations.

    Total order of ``entries()`` is ``(lamport_ts, node_id, hash)``: Lamport
    order respects causality, and concurrent entries are broken first by
    node id and then by content hash, which every replica computes the same.
    """

    def __init__(
        self,
        db_path: str | Path,
        log_id: str,
        node_id: str | None = None,
    ):
        """Initialize the log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            log_id: Logical name this log is scoped to.
            node_id: Identifier for this replica; random if not given.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.log_id = log_id
        self.node_id = node_id or uuid.uuid4().hex
        self._conn: sqlite3.Connection | None = None
        self._lamport_clock: int = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(OPLOG_SCHEMA)
        self._conn.commit()

        # Initialize Lamport clock from highest seen timestamp
        row = self._conn.execute("SELECT MAX(lamport_ts) FROM oplog").fetchone()
        if row[0] is not None:
            self._lamport_clock = row[0]

        logger.info(
            f"OpLog '{self.log_id}' connected to {self.db_path}, "
            f"lamport_clock={self._lamport_clock}"
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _tick(self) -> int:
        """Increment and return the Lamport clock."""
        self._lamport_clock += 1
        return self._lamport_clock

    def _update_clock(self, remote_ts: int) -> None:
        """Update Lamport clock based on remote timestamp."""
        self._lamport_clock = max(self._lamport_clock, remote_ts) + 1

    def _insert(
        self,
        conn: sqlite3.Connection,
        entry: LogEntry,
        published_at: datetime | None,
    ) -> None:
        # Payloads are not validated here; replay rejects malformed ones.
        payload = entry.payload
        operation = "tombstone" if isinstance(payload, dict) and payload.get("_deleted") else "write"
        conn.execute(
            """
            INSERT INTO oplog (
                hash, log_id, lamport_ts, node_id, operation, payload, next,
                created_at, published_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.hash,
                entry.log_id,
                entry.lamport_ts,
                entry.node_id,
                operation,
                json.dumps(entry.payload),
                json.dumps(entry.next),
                entry.created_at.isoformat(),
                published_at.isoformat() if published_at else None,
            ),
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LogEntry:
        return LogEntry(
            hash=row["hash"],
            log_id=row["log_id"],
            lamport_ts=row["lamport_ts"],
            node_id=row["node_id"],
            payload=json.loads(row["payload"]),
            next=json.loads(row["next"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            published_at=(
                datetime.fromisoformat(row["published_at"])
                if row["published_at"]
                else None
            ),
        )

    def append(self, payload: dict[str, Any]) -> LogEntry:
        """Append a new entry whose predecessors are the current heads.

        Args:
            payload: A document, or a tombstone ``{_id, _rev, _deleted}``.

        Returns:
            The created LogEntry, committed before returning.
        """
        conn = self._ensure_connected()

        entry = LogEntry.create(
            log_id=self.log_id,
            lamport_ts=self._tick(),
            node_id=self.node_id,
            payload=payload,
            next=self.heads(),
        )
        self._insert(conn, entry, published_at=None)
        conn.commit()

        logger.debug(f"Appended entry {entry.hash[:12]} with ts={entry.lamport_ts}")
        return entry

    def entries(self) -> list[LogEntry]:
        """All entries, oldest first, in the log's total order."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM oplog ORDER BY lamport_ts, node_id, hash"
        )
        return [self._row_to_entry(row) for row in cursor]

    @property
    def values(self) -> list[LogEntry]:
        return self.entries()

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries())

    @property
    def length(self) -> int:
        conn = self._ensure_connected()
        return conn.execute("SELECT COUNT(*) FROM oplog").fetchone()[0]

    def __len__(self) -> int:
        return self.length

    def get(self, entry_hash: str) -> LogEntry | None:
        conn = self._ensure_connected()
        row = conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM oplog WHERE hash = ?", (entry_hash,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def __contains__(self, entry_hash: object) -> bool:
        conn = self._ensure_connected()
        row = conn.execute("SELECT 1 FROM oplog WHERE hash = ?", (entry_hash,)).fetchone()
        return row is not None

    def heads(self) -> list[str]:
        """Hashes of entries that no other entry points back to."""
        conn = self._ensure_connected()
        hashes: set[str] = set()
        referenced: set[str] = set()
        for row in conn.execute("SELECT hash, next FROM oplog"):
            hashes.add(row["hash"])
            referenced.update(json.loads(row["next"]))
        return sorted(hashes - referenced)

    def merge(self, remote_entries: list[LogEntry], published: bool = False) -> int:
        """Merge entries into the local log.

        - Entries already present (same hash) are skipped
        - Entries whose predecessors are not present yet are kept as they are
        - Local clock moves past every remote timestamp

        Args:
            remote_entries: Entries from another replica.
            published: Whether the entries are known to be on the network.

        Returns:
            Number of new entries added.

        Raises:
            CorruptContent: An entry's hash does not match its content.
        """
        if not remote_entries:
            return 0

        conn = self._ensure_connected()
        received_at = datetime.now() if published else None

        added = 0
        for entry in remote_entries:
            if not entry.verify():
                raise CorruptContent(f"Entry {entry.hash} does not match its content.")

            self._update_clock(entry.lamport_ts)

            if entry.hash in self:
                continue

            self._insert(conn, entry, published_at=received_at)
            added += 1

        conn.commit()
        logger.info(f"Merged {added} new entries into log '{self.log_id}'")
        return added

    def join(self, other: "OpLog") -> int:
        """Merge the full history of another log into this one."""
        if other is self:
            return 0
        return self.merge(other.entries())

    def get_unpublished(self, limit: int | None = None) -> list[LogEntry]:
        """Entries whose blocks have not been pushed to any network yet."""
        conn = self._ensure_connected()
        query = (
            f"SELECT {_ENTRY_COLUMNS} FROM oplog WHERE published_at IS NULL "
            "ORDER BY lamport_ts, node_id, hash"
        )
        if limit is not None:
            cursor = conn.execute(query + " LIMIT ?", (limit,))
        else:
            cursor = conn.execute(query)
        return [self._row_to_entry(row) for row in cursor]

    def mark_published(self, entry_hashes: list[str]) -> int:
        """Mark entries as published.

        Returns:
            Number of entries updated.
        """
        if not entry_hashes:
            return 0

        conn = self._ensure_connected()
        now = datetime.now().isoformat()
        placeholders = ",".join("?" * len(entry_hashes))

        cursor = conn.execute(
            f"""
            UPDATE oplog
            SET published_at = ?
            WHERE hash IN ({placeholders}) AND published_at IS NULL
            """,
            (now, *entry_hashes),
        )
        conn.commit()
        return cursor.rowcount

    def reject(self, entry_hash: str, reason: str) -> None:
        """Record that an entry's payload cannot be applied.

        Rejected entries stay in the log (its history is immutable) but
        replay passes over them.
        """
        conn = self._ensure_connected()
        conn.execute(
            "INSERT OR IGNORE INTO rejected (hash, reason, rejected_at) VALUES (?, ?, ?)",
            (entry_hash, reason, datetime.now().isoformat()),
        )
        conn.commit()
        logger.warning(f"Rejected entry {entry_hash[:12]} in log '{self.log_id}': {reason}")

    def rejected(self) -> dict[str, str]:
        """Rejected entry hashes mapped to the reason they were rejected."""
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT hash, reason FROM rejected")
        return {row["hash"]: row["reason"] for row in cursor}

    def manifest(self) -> dict[str, Any]:
        """The block summarising this log's current state."""
        return {"type": MANIFEST_TYPE, "id": self.log_id, "heads": self.heads()}

    async def to_fingerprint(self, network: Network) -> str:
        """Publish entry blocks and the manifest.

        Every entry missing from ``network`` is pushed, whether or not it was
        published before: ``published_at`` only records that an entry reached
        some network, and the same log may be published to several.

        Returns:
            The manifest's fingerprint.
        """
        entries = self.entries()
        pushed = []
        for entry in entries:
            if not await network.has_block(entry.hash):
                await network.put_block(entry.to_block())
                pushed.append(entry.hash)
        self.mark_published([e.hash for e in entries])

        fingerprint = await network.put_block(self.manifest())
        logger.info(
            f"Published log '{self.log_id}' as {fingerprint} "
            f"({len(pushed)} new entries)"
        )
        return fingerprint

    @classmethod
    async def from_fingerprint(
        cls,
        network: Network,
        fingerprint: str,
        *,
        db_path: str | Path = ":memory:",
        node_id: str | None = None,
    ) -> "OpLog":
        """Reconstruct a log from a published manifest.

        Walks predecessor links from the manifest heads, fetching every
        entry block over the network. Transport errors propagate; retrying
        is the caller's job.

        Raises:
            NotFound: The manifest or an entry block is missing.
            NetworkUnavailable: The network could not be reached.
            CorruptContent: A block does not hash to its fingerprint.
        """
        manifest = await network.get_block(fingerprint)
        if content_hash(manifest) != fingerprint:
            raise CorruptContent(f"Manifest does not match fingerprint {fingerprint}")
        if manifest.get("type") != MANIFEST_TYPE:
            raise CorruptContent(f"Block {fingerprint} is not a log manifest")

        fetched: dict[str, LogEntry] = {}
        queue = deque(manifest.get("heads", []))
        while queue:
            entry_hash = queue.popleft()
            if entry_hash in fetched:
                continue
            entry = LogEntry.from_block(await network.get_block(entry_hash))
            if entry.hash != entry_hash:
                raise CorruptContent(f"Entry block does not match fingerprint {entry_hash}")
            fetched[entry_hash] = entry
            queue.extend(h for h in entry.next if h not in fetched)

        log = cls(db_path, log_id=manifest["id"], node_id=node_id)
        log.merge(list(fetched.values()), published=True)
        logger.info(f"Resolved log '{log.log_id}' from {fingerprint}: {len(fetched)} entries")
        return log

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "log_id": self.log_id,
            "node_id": self.node_id,
            "lamport_clock": self._lamport_clock,
        }

        stats["total_entries"] = conn.execute("SELECT COUNT(*) FROM oplog").fetchone()[0]
        stats["unpublished_entries"] = conn.execute(
            "SELECT COUNT(*) FROM oplog WHERE published_at IS NULL"
        ).fetchone()[0]

        cursor = conn.execute("SELECT operation, COUNT(*) FROM oplog GROUP BY operation")
        stats["entries_by_operation"] = {row[0]: row[1] for row in cursor}
        stats["rejected_entries"] = conn.execute("SELECT COUNT(*) FROM rejected").fetchone()[0]
        stats["heads"] = self.heads()

        return stats

"""SQLite-backed block store usable as a local network node."""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import NotFound
from ..hashing import canonical_json, content_hash
from .base import Network

logger = logging.getLogger(__name__)

BLOCKS_SCHEMA = """
CREATE TABLE IF NOT EXISTS blocks (
    fingerprint TEXT PRIMARY KEY,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


class LocalNetwork(Network):
    """Blocks kept in a local SQLite database.

    Several stores in one process can share a single instance, which is how
    tests and single-host deployments exchange logs without HTTP.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        """Initialize the block store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(BLOCKS_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalNetwork connected to {self.db_path}")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    async def put_block(self, block: dict[str, Any]) -> str:
        conn = self._ensure_connected()
        fingerprint = content_hash(block)
        conn.execute(
            "INSERT OR IGNORE INTO blocks (fingerprint, body, created_at) VALUES (?, ?, ?)",
            (fingerprint, canonical_json(block), datetime.now().isoformat()),
        )
        conn.commit()
        return fingerprint

    async def get_block(self, fingerprint: str) -> dict[str, Any]:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT body FROM blocks WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Block {fingerprint} not found.")
        return json.loads(row["body"])

    async def has_block(self, fingerprint: str) -> bool:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT 1 FROM blocks WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()
        return row is not None

    def count(self) -> int:
        conn = self._ensure_connected()
        return conn.execute("SELECT COUNT(*) FROM blocks").fetchone()[0]

    async def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

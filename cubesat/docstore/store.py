"""Local SQLite document store: the materialized view of a replica's log."""

import hashlib
import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ..errors import InvalidDocument, InvalidQuery, NotFound, RevisionConflict
from ..hashing import canonical_json
from .selector import matches, project, sort_docs, validate_request
from .views import run_query

logger = logging.getLogger(__name__)

RESERVED_FIELDS = ("_id", "_rev", "_deleted")
DESIGN_PREFIX = "_design/"

# SQL schema for the document database
SCHEMA = """
-- Winning revision per document id
CREATE TABLE IF NOT EXISTS docs (
    id TEXT PRIMARY KEY,
    rev TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    body TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_docs_deleted ON docs(deleted, id);

-- Every revision ever recorded, local or replicated
CREATE TABLE IF NOT EXISTS revs (
    id TEXT NOT NULL,
    rev TEXT NOT NULL,
    generation INTEGER NOT NULL,
    digest TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (id, rev)
);

CREATE INDEX IF NOT EXISTS idx_revs_winner ON revs(id, generation, digest);

-- Secondary indexes declared through create_index()
CREATE TABLE IF NOT EXISTS indexes (
    name TEXT PRIMARY KEY,
    sql_name TEXT NOT NULL,
    fields TEXT NOT NULL
);
"""

_REV_PATTERN = re.compile(r"^([1-9][0-9]*)-([0-9a-zA-Z]+)$")
_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass
class WriteResult:
    """Outcome of a checked write (upsert or remove)."""

    id: str
    rev: str

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "id": self.id, "rev": self.rev}


@dataclass
class BulkResult:
    """Outcome of recording one revision without conflict checks."""

    id: str
    rev: str
    applied: bool


def parse_rev(rev: Any) -> tuple[int, str]:
    """Split ``"3-abc..."`` into ``(3, "abc...")``.

    Raises:
        InvalidDocument: The revision is malformed.
    """
    match = _REV_PATTERN.match(rev) if isinstance(rev, str) else None
    if not match:
        raise InvalidDocument(f"Invalid revision: {rev!r}")
    return int(match.group(1)), match.group(2)


def new_rev(parent: str | None, body: dict[str, Any], deleted: bool) -> str:
    """Next revision after ``parent``; generation increases by one."""
    generation = parse_rev(parent)[0] + 1 if parent else 1
    digest = hashlib.md5(
        canonical_json({"parent": parent, "body": body, "deleted": deleted}).encode("utf-8")
    ).hexdigest()
    return f"{generation}-{digest}"


def strip_reserved(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in RESERVED_FIELDS}


class DocumentStore:
    """SQLite-based document store with revisions, selectors and views.

    The live view of an id is its winning revision: the maximum of all
    recorded revisions by ``(generation, digest)``. The rule does not depend
    on the order revisions arrive in, so replicas that recorded the same
    revisions agree on every document.
    """

    def __init__(self, db_path: str | Path, name: str = "cubesat"):
        """Initialize the document store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            name: Logical name of the store (for logging and stats).
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.name = name
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"DocumentStore '{self.name}' connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info(f"DocumentStore '{self.name}' connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _current(self, conn: sqlite3.Connection, doc_id: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT id, rev, deleted, body FROM docs WHERE id = ?", (doc_id,)
        ).fetchone()

    def _record(
        self,
        conn: sqlite3.Connection,
        doc_id: str,
        rev: str,
        deleted: bool,
        doc: dict[str, Any],
    ) -> bool:
        """Record a revision; returns False if it was already known."""
        generation, digest = parse_rev(rev)
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO revs (
                id, rev, generation, digest, deleted, body, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc_id,
                rev,
                generation,
                digest,
                int(deleted),
                json.dumps(doc),
                datetime.now().isoformat(),
            ),
        )
        if cursor.rowcount == 0:
            return False
        self._refresh_winner(conn, doc_id)
        return True

    def _refresh_winner(self, conn: sqlite3.Connection, doc_id: str) -> None:
        winner = conn.execute(
            """
            SELECT rev, deleted, body FROM revs
            WHERE id = ?
            ORDER BY generation DESC, digest DESC
            LIMIT 1
            """,
            (doc_id,),
        ).fetchone()
        conn.execute(
            """
            INSERT INTO docs (id, rev, deleted, body, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                rev = excluded.rev,
                deleted = excluded.deleted,
                body = excluded.body,
                updated_at = excluded.updated_at
            """,
            (doc_id, winner["rev"], winner["deleted"], winner["body"], datetime.now().isoformat()),
        )

    # ==================== Checked writes ====================

    def upsert(self, doc: dict[str, Any]) -> WriteResult:
        """Write a document under optimistic concurrency.

        Assigns an ``_id`` when absent. Updating a live document requires
        its current ``_rev``; recreating a deleted one may omit it.

        Raises:
            RevisionConflict: ``_rev`` is missing or stale.
        """
        conn = self._ensure_connected()

        doc_id = doc.get("_id") or uuid.uuid4().hex
        given = doc.get("_rev")
        current = self._current(conn, doc_id)

        if current is not None and not current["deleted"]:
            if given != current["rev"]:
                raise RevisionConflict(f"Document update conflict: {doc_id}")
            parent = current["rev"]
        elif current is not None:
            if given is not None and given != current["rev"]:
                raise RevisionConflict(f"Document update conflict: {doc_id}")
            parent = current["rev"]
        else:
            if given is not None:
                raise RevisionConflict(f"Document update conflict: {doc_id} does not exist")
            parent = None

        body = strip_reserved(doc)
        rev = new_rev(parent, body, deleted=False)
        self._record(conn, doc_id, rev, False, {"_id": doc_id, "_rev": rev, **body})
        conn.commit()

        logger.debug(f"Wrote {doc_id} at {rev}")
        return WriteResult(id=doc_id, rev=rev)

    def remove(self, doc_id: str, rev: str) -> WriteResult:
        """Delete a live document by writing a tombstone revision.

        Raises:
            NotFound: No live document with that id.
            RevisionConflict: ``rev`` is not the current revision.
        """
        conn = self._ensure_connected()

        current = self._current(conn, doc_id)
        if current is None or current["deleted"]:
            raise NotFound(f"Document {doc_id} not found.")
        if rev != current["rev"]:
            raise RevisionConflict(f"Document update conflict: {doc_id}")

        tombstone_rev = new_rev(current["rev"], {}, deleted=True)
        self._record(
            conn,
            doc_id,
            tombstone_rev,
            True,
            {"_id": doc_id, "_rev": tombstone_rev, "_deleted": True},
        )
        conn.commit()

        logger.debug(f"Deleted {doc_id} at {tombstone_rev}")
        return WriteResult(id=doc_id, rev=tombstone_rev)

    # ==================== Replication writes ====================

    def bulk_upsert_no_conflict_check(self, docs: list[dict[str, Any]]) -> list[BulkResult]:
        """Record documents exactly as given, revisions included.

        Used for replay: the revisions come from the log and are not checked
        against local state. A revision that is already recorded is reported
        with ``applied=False`` and changes nothing.

        Raises:
            InvalidDocument: A document lacks ``_id`` or has a malformed ``_rev``.
        """
        conn = self._ensure_connected()

        results = []
        for doc in docs:
            if not isinstance(doc, dict) or not isinstance(doc.get("_id"), str) or not doc["_id"]:
                raise InvalidDocument("Replicated document requires an _id.")
            rev = doc.get("_rev")
            parse_rev(rev)
            deleted = bool(doc.get("_deleted"))
            if deleted:
                stored = {"_id": doc["_id"], "_rev": rev, "_deleted": True}
            else:
                stored = {"_id": doc["_id"], "_rev": rev, **strip_reserved(doc)}

            applied = self._record(conn, doc["_id"], rev, deleted, stored)
            conn.commit()
            results.append(BulkResult(id=doc["_id"], rev=rev, applied=applied))

        return results

    def apply_tombstone(self, doc_id: str, rev: str) -> BulkResult:
        """Record a replicated deletion."""
        return self.bulk_upsert_no_conflict_check(
            [{"_id": doc_id, "_rev": rev, "_deleted": True}]
        )[0]

    # ==================== Reads ====================

    def get(self, doc_id: str, rev: str | None = None) -> dict[str, Any]:
        """Get the live document, or a specific recorded revision.

        Raises:
            NotFound: Absent, deleted, or unknown revision.
        """
        conn = self._ensure_connected()

        if rev is not None:
            row = conn.execute(
                "SELECT deleted, body FROM revs WHERE id = ? AND rev = ?", (doc_id, rev)
            ).fetchone()
        else:
            row = self._current(conn, doc_id)

        if row is None:
            raise NotFound(f"Document {doc_id} not found.")
        if row["deleted"]:
            raise NotFound(f"Document {doc_id} was deleted.")
        return json.loads(row["body"])

    def revisions(self, doc_id: str) -> list[str]:
        """All recorded revisions of an id, newest generation first."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT rev FROM revs WHERE id = ? ORDER BY generation DESC, digest DESC",
            (doc_id,),
        )
        return [row["rev"] for row in cursor]

    def _live_docs(self, include_design: bool = True) -> list[dict[str, Any]]:
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT id, body FROM docs WHERE deleted = 0 ORDER BY id")
        return [
            json.loads(row["body"])
            for row in cursor
            if include_design or not row["id"].startswith(DESIGN_PREFIX)
        ]

    def scan(
        self,
        include_docs: bool = True,
        keys: list[str] | None = None,
        startkey: str | None = None,
        endkey: str | None = None,
        limit: int | None = None,
        skip: int = 0,
        descending: bool = False,
    ) -> dict[str, Any]:
        """All live documents as rows sorted by id.

        Returns:
            ``{"total_rows", "offset", "rows"}`` where each row is
            ``{"id", "key", "value": {"rev"}, "doc"?}``.
        """
        docs = self._live_docs()
        total = len(docs)

        if keys is not None:
            by_id = {d["_id"]: d for d in docs}
            selected: list[dict[str, Any] | str] = [by_id.get(k, k) for k in keys]
        else:
            if descending:
                docs.reverse()
            low, high = (endkey, startkey) if descending else (startkey, endkey)
            selected = [
                d for d in docs
                if (low is None or d["_id"] >= low) and (high is None or d["_id"] <= high)
            ]

        end = None if limit is None else skip + limit
        rows = []
        for item in selected[skip:end]:
            if isinstance(item, str):
                rows.append({"key": item, "error": "not_found"})
                continue
            row = {"id": item["_id"], "key": item["_id"], "value": {"rev": item["_rev"]}}
            if include_docs:
                row["doc"] = item
            rows.append(row)

        return {"total_rows": total, "offset": skip, "rows": rows}

    def find(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run a Mango-style find request.

        Args:
            request: ``{"selector", "fields"?, "sort"?, "limit"?, "skip"?}``.

        Returns:
            ``{"docs": [...]}``.

        Raises:
            InvalidQuery: The request is malformed.
        """
        req = validate_request(request)
        candidates = self._candidates(req["selector"])

        docs = [d for d in candidates if matches(d, req["selector"])]
        docs = sort_docs(docs, req["sort"])
        end = None if req["limit"] is None else req["skip"] + req["limit"]
        docs = docs[req["skip"]:end]

        return {"docs": [project(d, req["fields"]) for d in docs]}

    def _candidates(self, selector: dict[str, Any]) -> list[dict[str, Any]]:
        """Narrow the scan with an index on an equality field, if one exists."""
        indexed = {json.loads(r["fields"])[0] for r in self._index_rows()}
        for field, condition in selector.items():
            if field not in indexed:
                continue
            if isinstance(condition, dict) and set(condition) == {"$eq"}:
                condition = condition["$eq"]
            if isinstance(condition, str) or (
                isinstance(condition, (int, float)) and not isinstance(condition, bool)
            ):
                conn = self._ensure_connected()
                cursor = conn.execute(
                    f"""
                    SELECT id, body FROM docs
                    WHERE deleted = 0 AND json_extract(body, '$.{field}') = ?
                    ORDER BY id
                    """,
                    (condition,),
                )
                logger.debug(f"find narrowed by index on {field}")
                return [
                    json.loads(row["body"])
                    for row in cursor
                    if not row["id"].startswith(DESIGN_PREFIX)
                ]
        return self._live_docs(include_design=False)

    # ==================== Indexes ====================

    def _index_rows(self) -> list[sqlite3.Row]:
        conn = self._ensure_connected()
        return conn.execute("SELECT name, sql_name, fields FROM indexes ORDER BY name").fetchall()

    def create_index(self, fields: list[str], name: str | None = None) -> dict[str, str]:
        """Create a secondary index over document fields.

        Raises:
            InvalidQuery: Fields are empty or not plain dotted paths.
        """
        if not fields or not all(isinstance(f, str) and _FIELD_PATH.match(f) for f in fields):
            raise InvalidQuery("Index fields must be a non-empty list of field paths.")

        conn = self._ensure_connected()
        name = name or "idx-" + "-".join(fields)
        if conn.execute("SELECT 1 FROM indexes WHERE name = ?", (name,)).fetchone():
            return {"result": "exists", "name": name}

        sql_name = "idx_doc_" + hashlib.md5(name.encode("utf-8")).hexdigest()[:16]
        columns = ", ".join(f"json_extract(body, '$.{f}')" for f in fields)
        conn.execute(f"CREATE INDEX IF NOT EXISTS {sql_name} ON docs({columns})")
        conn.execute(
            "INSERT INTO indexes (name, sql_name, fields) VALUES (?, ?, ?)",
            (name, sql_name, json.dumps(fields)),
        )
        conn.commit()

        logger.info(f"Created index {name} on {fields}")
        return {"result": "created", "name": name}

    def get_indexes(self) -> list[dict[str, Any]]:
        return [
            {"name": row["name"], "fields": json.loads(row["fields"])}
            for row in self._index_rows()
        ]

    def delete_index(self, name: str) -> None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT sql_name FROM indexes WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise NotFound(f"Index {name} not found.")
        conn.execute(f"DROP INDEX IF EXISTS {row['sql_name']}")
        conn.execute("DELETE FROM indexes WHERE name = ?", (name,))
        conn.commit()

    # ==================== Views ====================

    def query(
        self,
        view: str | dict[str, Any] | Callable[..., None],
        **options: Any,
    ) -> dict[str, Any]:
        """Run a map/reduce view.

        Args:
            view: A map callable, a ``{"map", "reduce"}`` object, or
                ``"ddoc/view"`` naming a view stored in ``_design/ddoc``.
            **options: include_docs, reduce, group, key, startkey, endkey,
                limit, skip, descending.

        Raises:
            NotFound: The design document or view does not exist.
            InvalidQuery: The view definition is malformed.
        """
        if callable(view):
            definition: dict[str, Any] = {"map": view}
        elif isinstance(view, dict):
            definition = view
        elif isinstance(view, str):
            definition = self._design_view(view)
        else:
            raise InvalidQuery(f"Unsupported view: {view!r}")

        return run_query(self._live_docs(include_design=False), definition, **options)

    def _design_view(self, path: str) -> dict[str, Any]:
        ddoc_name, _, view_name = path.partition("/")
        if not ddoc_name or not view_name:
            raise InvalidQuery(f"View path must be 'ddoc/view', got {path!r}")

        ddoc = self.get(DESIGN_PREFIX + ddoc_name)
        views = ddoc.get("views")
        if not isinstance(views, dict) or view_name not in views:
            raise NotFound(f"View {path} not found.")
        definition = views[view_name]
        if not isinstance(definition, dict):
            raise InvalidQuery(f"View {path} must be an object.")
        return definition

    # ==================== Maintenance ====================

    def get_stats(self) -> dict[str, Any]:
        """Get document statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {"name": self.name}
        stats["doc_count"] = conn.execute(
            "SELECT COUNT(*) FROM docs WHERE deleted = 0"
        ).fetchone()[0]
        stats["deleted_count"] = conn.execute(
            "SELECT COUNT(*) FROM docs WHERE deleted = 1"
        ).fetchone()[0]
        stats["revision_count"] = conn.execute("SELECT COUNT(*) FROM revs").fetchone()[0]
        stats["index_count"] = conn.execute("SELECT COUNT(*) FROM indexes").fetchone()[0]

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats

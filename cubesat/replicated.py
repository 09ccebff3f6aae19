"""Replicated document store.

A ReplicatedStore binds one operation log and one document store to the
same logical name. Mutations are written to the document store first (to
obtain a revision) and then appended to the log. Joining another replica
merges its log and replays the whole log into the document store, which is
idempotent because replay records revisions exactly as logged.

The log is the source of truth; the document store is a rebuildable cache.

Instances are single-writer: put/post/delete must not run concurrently on
the same store, and a join running alongside a put may interleave either way.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from jsonschema import Draft7Validator

from .config import Config
from .docstore import DocumentStore
from .docstore.store import parse_rev, strip_reserved
from .errors import (
    CubeError,
    InvalidDocument,
    MissingIdentifier,
    MissingRevision,
    NoFingerprintYet,
    NotLoadable,
)
from .hashing import canonical_json, is_fingerprint
from .network import HTTPNetwork, LocalNetwork, Network
from .oplog import OpLog, Tombstone, operation_for

logger = logging.getLogger(__name__)

LogFactory = Callable[[str, Config], OpLog]
StoreFactory = Callable[[str, Config], DocumentStore]
NetworkFactory = Callable[[Config], Network]


@dataclass(frozen=True)
class Address:
    """A published log state: its fingerprint and the name it was published under."""

    name: str
    fingerprint: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "fingerprint": self.fingerprint}


@dataclass
class JoinResult:
    """Outcome of a join: entries merged into the log and replay counts."""

    merged: int = 0
    replayed: int = 0
    skipped: int = 0
    rejected: int = 0


def default_log_factory(name: str, config: Config) -> OpLog:
    return OpLog(
        config.store.path_for(name, "log"),
        log_id=name,
        node_id=config.node.node_id or None,
    )


def default_store_factory(name: str, config: Config) -> DocumentStore:
    return DocumentStore(config.store.path_for(name, "docs"), name=name)


def default_network_factory(config: Config) -> Network:
    if config.network.url:
        return HTTPNetwork(
            url=config.network.url,
            timeout=config.network.timeout,
            max_retries=config.network.max_retries,
        )
    if config.store.in_memory:
        return LocalNetwork(":memory:")
    return LocalNetwork(Path(config.store.data_dir).expanduser() / config.network.blocks_db)


def resolve_address(name: Any) -> tuple[str, Address | None]:
    """Interpret a construction name.

    Accepts a plain name, an Address, a ``{"fingerprint", "name"}`` mapping,
    or a bare fingerprint string (which is then both name and address).
    """
    if isinstance(name, Address):
        return name.name, name
    if isinstance(name, Mapping):
        fingerprint = name.get("fingerprint")
        if not is_fingerprint(fingerprint):
            raise ValueError(f"Invalid fingerprint in address: {fingerprint!r}")
        address = Address(name=name.get("name") or fingerprint, fingerprint=fingerprint)
        return address.name, address
    if isinstance(name, str) and name:
        if is_fingerprint(name):
            return name, Address(name=name, fingerprint=name)
        return name, None
    raise ValueError("ReplicatedStore requires a name, address or fingerprint.")


class ReplicatedStore:
    """Local document database kept eventually consistent with its peers.

    Args:
        name: Logical name, Address, ``{"fingerprint", "name"}`` or fingerprint.
        config: Settings; defaults to ``Config()``.
        network: Network collaborator to use instead of building one.
        log_factory: Builds the OpLog for a name.
        store_factory: Builds the DocumentStore for a name.
        network_factory: Builds the Network when ``network`` is not given.
        schema: Optional JSON Schema every written document must satisfy.
    """

    Error = CubeError

    def __init__(
        self,
        name: str | Address | Mapping[str, str],
        config: Config | None = None,
        *,
        network: Network | None = None,
        log_factory: LogFactory | None = None,
        store_factory: StoreFactory | None = None,
        network_factory: NetworkFactory | None = None,
        schema: dict[str, Any] | None = None,
    ):
        self._config = config or Config()
        self._name, self._address = resolve_address(name)

        self._owns_network = network is None
        if network is None:
            network = (network_factory or default_network_factory)(self._config)
        self._network = network
        self._log = (log_factory or default_log_factory)(self._name, self._config)
        self._store = (store_factory or default_store_factory)(self._name, self._config)

        self._validator: Draft7Validator | None = None
        if schema is not None:
            Draft7Validator.check_schema(schema)
            self._validator = Draft7Validator(schema)

        self._fingerprint: str | None = None

    # ==================== Validation ====================

    def validate(self, doc: Any) -> None:
        """A document validator.

        Makes sure a document is an object but not an array, that its
        reserved fields are well formed and that it serializes to JSON.
        Subclasses can extend this method to enforce a schema.

        Raises:
            InvalidDocument: The document is not acceptable.
        """
        if isinstance(doc, (list, tuple)):
            raise InvalidDocument("Document must not be an array.")
        if not isinstance(doc, Mapping):
            raise InvalidDocument("Document must be an object.")

        for key in doc:
            if not isinstance(key, str):
                raise InvalidDocument(f"Document keys must be strings, got {key!r}")
            if key.startswith("_") and key not in ("_id", "_rev"):
                raise InvalidDocument(f"Bad special document member: {key}")
        if "_id" in doc and (not isinstance(doc["_id"], str) or not doc["_id"]):
            raise InvalidDocument("_id must be a non-empty string.")
        if "_rev" in doc and not isinstance(doc["_rev"], str):
            raise InvalidDocument("_rev must be a string.")

        try:
            canonical_json(dict(doc))
        except (TypeError, ValueError) as e:
            raise InvalidDocument(f"Document is not JSON-serializable: {e}") from e

        if self._validator is not None:
            error = next(iter(self._validator.iter_errors(dict(doc))), None)
            if error is not None:
                path = ".".join(str(p) for p in error.absolute_path) or "<root>"
                raise InvalidDocument(f"Schema violation at {path}: {error.message}")

    def _check_write(self, doc: Any, require_id: bool) -> None:
        self.validate(doc)
        if require_id and not doc.get("_id"):
            raise MissingIdentifier("Document requires an _id. Use post() to have one assigned.")

    # ==================== Mutations ====================

    async def put(self, doc: Mapping[str, Any] | list) -> dict[str, Any] | list[dict[str, Any]]:
        """Write a document that carries its own ``_id``.

        Returns:
            ``{"ok", "id", "rev"}``, or a list of those for a list of documents.
        """
        if isinstance(doc, list):
            return await self._write_many(doc, require_id=True)
        self._check_write(doc, require_id=True)
        return self._write(doc)

    async def post(self, doc: Mapping[str, Any] | list) -> dict[str, Any] | list[dict[str, Any]]:
        """Write a document, letting the store assign its ``_id``."""
        if isinstance(doc, list):
            return await self._write_many(doc, require_id=False)
        self._check_write(doc, require_id=False)
        return self._write(doc)

    async def _write_many(self, docs: list, require_id: bool) -> list[dict[str, Any]]:
        # Everything is validated before the first write.
        for i, doc in enumerate(docs):
            try:
                self._check_write(doc, require_id)
            except CubeError as e:
                raise type(e)(f"Document {i}: {e}") from e

        results = []
        for i, doc in enumerate(docs):
            try:
                results.append(self._write(doc))
            except CubeError as e:
                raise type(e)(f"Document {i}: {e}") from e
        return results

    def _write(self, doc: Mapping[str, Any]) -> dict[str, Any]:
        # Store first: a crash before the append leaves the log behind the
        # store, never ahead of it.
        result = self._store.upsert(dict(doc))
        self._log.append({"_id": result.id, "_rev": result.rev, **strip_reserved(dict(doc))})
        self._fingerprint = None
        return result.to_dict()

    async def delete(self, doc: Mapping[str, Any]) -> dict[str, Any]:
        """Delete a document at its current revision.

        The tombstone appended to the log carries the revision assigned by
        the removal, not the caller's, so every replica converges on it.

        Raises:
            InvalidDocument: ``validate`` refuses the document.
            MissingIdentifier: ``_id`` is absent.
            MissingRevision: ``_rev`` is absent.
            RevisionConflict: ``_rev`` is stale.
            NotFound: No live document with that id.
        """
        self.validate(doc)
        doc_id = doc.get("_id")
        rev = doc.get("_rev")
        if not doc_id:
            raise MissingIdentifier("Document requires an _id to delete it.")
        if not rev:
            raise MissingRevision("Document requires a _rev to delete it.")

        result = self._store.remove(doc_id, rev)
        self._log.append(Tombstone(doc_id=result.id, rev=result.rev).to_payload())
        self._fingerprint = None
        return result.to_dict()

    # ==================== Reads ====================

    async def get(self, doc_id: str, rev: str | None = None) -> dict[str, Any]:
        return self._store.get(doc_id, rev=rev)

    async def all(self, include_docs: bool = True, **options: Any) -> list[dict[str, Any]]:
        """All live documents.

        With ``include_docs`` (the default) the documents themselves are
        returned, in the same form as ``find()``; otherwise the raw rows.
        """
        result = self._store.scan(include_docs=include_docs, **options)
        if include_docs:
            return [row["doc"] for row in result["rows"] if "doc" in row]
        return result["rows"]

    async def find(self, request: dict[str, Any]) -> list[dict[str, Any]]:
        """Mango-style query; returns the matching documents."""
        return self._store.find(request)["docs"]

    async def query(self, view: Any, **options: Any) -> dict[str, Any]:
        """Map/reduce query; see ``DocumentStore.query``."""
        return self._store.query(view, **options)

    async def create_index(self, fields: list[str], name: str | None = None) -> dict[str, str]:
        return self._store.create_index(fields, name=name)

    # ==================== Replication ====================

    async def join(self, other: "ReplicatedStore | OpLog") -> JoinResult:
        """Merge another store's (or a bare log's) history into this one.

        The merged log is replayed from its first entry. Entries that are
        already materialized are skipped; an entry that cannot be applied
        aborts the replay, leaving the log merged, and a later join resumes.
        """
        if isinstance(other, ReplicatedStore):
            other = other.log

        merged = self._log.join(other)
        if merged:
            self._fingerprint = None

        replayed, skipped, rejected = self._replay()
        logger.info(
            f"Joined into '{self._name}': merged={merged}, "
            f"replayed={replayed}, skipped={skipped}, rejected={rejected}"
        )
        return JoinResult(merged=merged, replayed=replayed, skipped=skipped, rejected=rejected)

    async def replay(self) -> JoinResult:
        """Replay the local log alone, e.g. to rebuild a lost document store."""
        replayed, skipped, rejected = self._replay()
        return JoinResult(replayed=replayed, skipped=skipped, rejected=rejected)

    def _replay(self) -> tuple[int, int, int]:
        replayed = skipped = rejected = 0
        known_bad = self._log.rejected()
        for entry in self._log.entries():
            if entry.hash in known_bad:
                rejected += 1
                logger.warning(f"Passing over rejected entry {entry.hash[:12]}")
                continue

            try:
                operation = operation_for(entry.payload)
                parse_rev(operation.rev)
            except InvalidDocument as e:
                # A malformed payload fails the same way on every replay.
                self._log.reject(entry.hash, str(e))
                logger.error(f"Replay failed at entry {entry.hash[:12]}: {e}")
                raise

            try:
                if isinstance(operation, Tombstone):
                    result = self._store.apply_tombstone(operation.doc_id, operation.rev)
                else:
                    result = self._store.bulk_upsert_no_conflict_check([operation.doc])[0]
            except CubeError as e:
                logger.error(f"Replay failed at entry {entry.hash[:12]}: {e}")
                raise

            if result.applied:
                replayed += 1
                logger.debug(f"Replayed {result.id} at {result.rev}")
            else:
                skipped += 1
                logger.debug(f"Entry {entry.hash[:12]} already applied, skipping")
        return replayed, skipped, rejected

    async def to_fingerprint(self) -> str:
        """Publish the log and remember its fingerprint."""
        self._fingerprint = await self._log.to_fingerprint(self._network)
        return self._fingerprint

    @property
    def fingerprint(self) -> str:
        if not self._fingerprint:
            raise NoFingerprintYet(
                "Store does not have a fingerprint yet. Call to_fingerprint() first."
            )
        return self._fingerprint

    async def load(self) -> JoinResult:
        """Bootstrap from the fingerprint this store was constructed with.

        May wait on the network for as long as it takes; network errors
        propagate and retrying is the caller's job.

        Raises:
            NotLoadable: The store was constructed from a plain name.
            NetworkUnavailable: The network could not be reached.
        """
        if self._address is None:
            raise NotLoadable(f"Store '{self._name}' was not constructed from a fingerprint.")

        foreign = await OpLog.from_fingerprint(self._network, self._address.fingerprint)
        try:
            return await self.join(foreign)
        finally:
            foreign.close()

    # ==================== Accessors ====================

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> Address | None:
        return self._address

    @property
    def config(self) -> Config:
        return self._config

    @property
    def log(self) -> OpLog:
        return self._log

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def network(self) -> Network:
        return self._network

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "address": self._address.to_dict() if self._address else None,
            "fingerprint": self._fingerprint,
            "log": self._log.get_stats(),
            "store": self._store.get_stats(),
        }

    async def close(self) -> None:
        """Close the log and store, and the network if this store built it."""
        self._log.close()
        self._store.close()
        if self._owns_network:
            await self._network.close()

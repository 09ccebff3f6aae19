"""Error taxonomy for cubesat.

Every error raised to callers is a CubeError. Subclasses tag the kind of
failure so callers can catch a specific case or the whole family.
"""


class CubeError(Exception):
    """Base class for cube-related problems."""

    kind = "cube_error"


class InvalidDocument(CubeError):
    """Document failed shape or schema validation."""

    kind = "invalid_document"


class MissingIdentifier(CubeError):
    """A write or delete needed an _id and none was given."""

    kind = "missing_identifier"


class MissingRevision(CubeError):
    """A delete needed a _rev and none was given."""

    kind = "missing_revision"


class RevisionConflict(CubeError):
    """The supplied _rev is not the document's current revision."""

    kind = "revision_conflict"


class NotFound(CubeError):
    """Document, revision, view or block does not exist."""

    kind = "not_found"


class NoFingerprintYet(CubeError):
    """The fingerprint was read before to_fingerprint() was called."""

    kind = "no_fingerprint_yet"


class NotLoadable(CubeError):
    """load() was called on a store not constructed from a fingerprint."""

    kind = "not_loadable"


class NetworkUnavailable(CubeError):
    """The network collaborator could not be reached."""

    kind = "network_unavailable"


class InvalidQuery(CubeError):
    """A selector, sort or view definition is malformed."""

    kind = "invalid_query"


class CorruptContent(CubeError):
    """Fetched content does not hash to the fingerprint it was requested by."""

    kind = "corrupt_content"

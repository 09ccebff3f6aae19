"""Local document store for cubesat replicas.

Provides the queryable projection of the operation log:
- Documents with revision history and optimistic concurrency
- Mango-style selectors and secondary indexes
- Map/reduce views, ad hoc or stored in design documents
"""

from .store import BulkResult, DocumentStore, WriteResult, new_rev, parse_rev

__all__ = ["BulkResult", "DocumentStore", "WriteResult", "new_rev", "parse_rev"]

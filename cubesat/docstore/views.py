"""Map/reduce views over documents.

A map is either a Python callable ``fn(doc, emit)`` (ad hoc queries) or a
declarative mapping that can live in a replicated design document::

    {"selector": {"team": "Mushroom"}, "key": "name", "value": null}

``key`` is a dotted path or a list of paths (compound key). Documents
missing a single-path key are not emitted.
"""

from dataclasses import dataclass
from typing import Any, Callable

from ..errors import InvalidQuery
from .selector import collation_key, get_field, matches, MISSING

MapFunction = Callable[[dict[str, Any], Callable[..., None]], None]
ReduceFunction = Callable[[list[Any], list[Any]], Any]

BUILTIN_REDUCERS = ("_count", "_sum", "_stats")


@dataclass
class ViewRow:
    id: str
    key: Any
    value: Any


def compile_map(definition: Any) -> MapFunction:
    """Turn a view's ``map`` into a callable.

    Raises:
        InvalidQuery: The definition is neither callable nor a valid mapping.
    """
    if callable(definition):
        return definition
    if not isinstance(definition, dict):
        raise InvalidQuery("View map must be a callable or an object.")

    selector = definition.get("selector", {})
    key_path = definition.get("key", "_id")
    value_path = definition.get("value")

    if not isinstance(selector, dict):
        raise InvalidQuery("View map selector must be an object.")
    if not (isinstance(key_path, str) or (
        isinstance(key_path, list) and all(isinstance(p, str) for p in key_path)
    )):
        raise InvalidQuery("View map key must be a field path or a list of paths.")
    if value_path is not None and not isinstance(value_path, str):
        raise InvalidQuery("View map value must be a field path or null.")

    def map_fn(doc: dict[str, Any], emit: Callable[..., None]) -> None:
        if not matches(doc, selector):
            return
        if isinstance(key_path, list):
            key = [_or_none(get_field(doc, p)) for p in key_path]
        else:
            key = get_field(doc, key_path)
            if key is MISSING:
                return
        value = None if value_path is None else _or_none(get_field(doc, value_path))
        emit(key, value)

    return map_fn


def _or_none(value: Any) -> Any:
    return None if value is MISSING else value


def run_map(docs: list[dict[str, Any]], map_fn: MapFunction) -> list[ViewRow]:
    """Apply a map to every document and return rows in key order."""
    rows: list[ViewRow] = []
    for doc in docs:
        def emit(key: Any = None, value: Any = None, doc_id: str = doc["_id"]) -> None:
            rows.append(ViewRow(id=doc_id, key=key, value=value))

        map_fn(doc, emit)

    rows.sort(key=lambda r: (collation_key(r.key), r.id))
    return rows


def reduce_values(reducer: str | ReduceFunction, keys: list[Any], values: list[Any]) -> Any:
    if callable(reducer):
        return reducer(keys, values)
    if reducer == "_count":
        return len(values)
    if reducer == "_sum":
        return sum(_numbers(values, "_sum"))
    if reducer == "_stats":
        numbers = _numbers(values, "_stats")
        if not numbers:
            return {"sum": 0, "count": 0, "min": None, "max": None, "sumsqr": 0}
        return {
            "sum": sum(numbers),
            "count": len(numbers),
            "min": min(numbers),
            "max": max(numbers),
            "sumsqr": sum(n * n for n in numbers),
        }
    raise InvalidQuery(f"Unknown reducer: {reducer!r}")


def _numbers(values: list[Any], reducer: str) -> list[float]:
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise InvalidQuery(f"{reducer} requires numeric values, got {v!r}")
    return values


def _in_range(key: Any, startkey: Any, endkey: Any, descending: bool) -> bool:
    k = collation_key(key)
    low, high = (endkey, startkey) if descending else (startkey, endkey)
    if low is not None and k < collation_key(low):
        return False
    if high is not None and k > collation_key(high):
        return False
    return True


def run_query(
    docs: list[dict[str, Any]],
    view: dict[str, Any],
    *,
    include_docs: bool = False,
    reduce: bool = True,
    group: bool = False,
    key: Any = MISSING,
    startkey: Any = None,
    endkey: Any = None,
    limit: int | None = None,
    skip: int = 0,
    descending: bool = False,
) -> dict[str, Any]:
    """Run a view over ``docs``.

    Args:
        docs: Live documents to map.
        view: ``{"map": ..., "reduce": ...}``; reduce is optional.

    Returns:
        ``{"total_rows", "offset", "rows"}`` for map results, or
        ``{"rows": [{"key", "value"}]}`` when reduced.
    """
    map_fn = compile_map(view.get("map"))
    reducer = view.get("reduce")
    if reducer is not None and not callable(reducer) and reducer not in BUILTIN_REDUCERS:
        raise InvalidQuery(f"Unknown reducer: {reducer!r}")

    all_rows = run_map(docs, map_fn)
    rows = list(reversed(all_rows)) if descending else all_rows
    if key is not MISSING:
        rows = [r for r in rows if collation_key(r.key) == collation_key(key)]
    rows = [r for r in rows if _in_range(r.key, startkey, endkey, descending)]

    if reducer is not None and reduce:
        if group:
            groups: dict[tuple, list[ViewRow]] = {}
            for r in rows:
                groups.setdefault(collation_key(r.key), []).append(r)
            reduced = [
                {
                    "key": members[0].key,
                    "value": reduce_values(
                        reducer, [m.key for m in members], [m.value for m in members]
                    ),
                }
                for members in groups.values()
            ]
        else:
            reduced = [{
                "key": None,
                "value": reduce_values(reducer, [r.key for r in rows], [r.value for r in rows]),
            }] if rows else []
        end = None if limit is None else skip + limit
        return {"rows": reduced[skip:end]}

    end = None if limit is None else skip + limit
    by_id = {d["_id"]: d for d in docs} if include_docs else {}
    result_rows = []
    for r in rows[skip:end]:
        row = {"id": r.id, "key": r.key, "value": r.value}
        if include_docs:
            row["doc"] = by_id.get(r.id)
        result_rows.append(row)

    return {"total_rows": len(all_rows), "offset": skip, "rows": result_rows}

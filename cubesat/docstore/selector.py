"""Mango-style selectors: matching, sorting and projection.

Values are compared with CouchDB collation order:
null < false < true < numbers < strings < arrays < objects.
"""

import re
from typing import Any

from ..errors import InvalidQuery

_TYPE_NAMES = {
    type(None): "null",
    bool: "boolean",
    int: "number",
    float: "number",
    str: "string",
    list: "array",
    dict: "object",
}

MISSING = object()


def collation_key(value: Any) -> tuple:
    """Sort key implementing CouchDB collation across JSON types."""
    if value is None:
        return (0,)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, (list, tuple)):
        return (4, tuple(collation_key(v) for v in value))
    if isinstance(value, dict):
        return (5, tuple((k, collation_key(v)) for k, v in sorted(value.items())))
    raise InvalidQuery(f"Value of type {type(value).__name__} is not JSON-comparable")


def get_field(doc: Any, path: str) -> Any:
    """Resolve a dotted path, returning ``MISSING`` when absent."""
    value = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return MISSING
    return value


def _equal(a: Any, b: Any) -> bool:
    return collation_key(a) == collation_key(b)


def _is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, dict)
        and bool(condition)
        and all(k.startswith("$") for k in condition)
    )


def matches(doc: Any, selector: dict[str, Any]) -> bool:
    """Check whether ``doc`` satisfies ``selector``.

    Raises:
        InvalidQuery: Unknown operator or malformed argument.
    """
    if not isinstance(selector, dict):
        raise InvalidQuery("Selector must be an object.")

    for key, condition in selector.items():
        if key == "$and":
            if not all(matches(doc, s) for s in _selector_list(key, condition)):
                return False
        elif key == "$or":
            if not any(matches(doc, s) for s in _selector_list(key, condition)):
                return False
        elif key == "$nor":
            if any(matches(doc, s) for s in _selector_list(key, condition)):
                return False
        elif key == "$not":
            if matches(doc, condition):
                return False
        elif key.startswith("$"):
            raise InvalidQuery(f"Unknown top-level operator: {key}")
        elif not _match_condition(get_field(doc, key), condition):
            return False
    return True


def _selector_list(operator: str, value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise InvalidQuery(f"{operator} requires an array of selectors.")
    return value


def _match_condition(value: Any, condition: Any) -> bool:
    if _is_operator_dict(condition):
        return all(_apply_operator(op, arg, value) for op, arg in condition.items())
    if isinstance(condition, dict) and condition:
        # nested field selector, e.g. {"address": {"city": "Paris"}}
        return isinstance(value, dict) and matches(value, condition)
    return value is not MISSING and _equal(value, condition)


def _apply_operator(op: str, arg: Any, value: Any) -> bool:
    if op == "$exists":
        return (value is not MISSING) == bool(arg)
    if op == "$not":
        return not _match_condition(value, arg)
    if value is MISSING:
        return False

    if op == "$eq":
        return _equal(value, arg)
    if op == "$ne":
        return not _equal(value, arg)
    if op == "$gt":
        return collation_key(value) > collation_key(arg)
    if op == "$gte":
        return collation_key(value) >= collation_key(arg)
    if op == "$lt":
        return collation_key(value) < collation_key(arg)
    if op == "$lte":
        return collation_key(value) <= collation_key(arg)
    if op == "$in":
        if not isinstance(arg, list):
            raise InvalidQuery("$in requires an array.")
        return any(_equal(value, a) for a in arg)
    if op == "$nin":
        if not isinstance(arg, list):
            raise InvalidQuery("$nin requires an array.")
        return not any(_equal(value, a) for a in arg)
    if op == "$type":
        return _TYPE_NAMES.get(type(value)) == arg
    if op == "$regex":
        if not isinstance(arg, str):
            raise InvalidQuery("$regex requires a string pattern.")
        try:
            return isinstance(value, str) and re.search(arg, value) is not None
        except re.error as e:
            raise InvalidQuery(f"Invalid $regex pattern {arg!r}: {e}") from e
    if op == "$size":
        return isinstance(value, list) and len(value) == arg
    if op == "$mod":
        if not (isinstance(arg, list) and len(arg) == 2 and all(isinstance(a, int) for a in arg)):
            raise InvalidQuery("$mod requires [divisor, remainder].")
        if arg[0] == 0:
            raise InvalidQuery("$mod divisor must not be zero.")
        return (
            isinstance(value, int)
            and not isinstance(value, bool)
            and value % arg[0] == arg[1]
        )
    if op == "$all":
        if not isinstance(arg, list):
            raise InvalidQuery("$all requires an array.")
        return isinstance(value, list) and all(
            any(_equal(item, a) for item in value) for a in arg
        )
    if op == "$elemMatch":
        return isinstance(value, list) and any(_match_condition(item, arg) for item in value)

    raise InvalidQuery(f"Unknown operator: {op}")


def validate_request(request: Any) -> dict[str, Any]:
    """Check the shape of a find request and return it normalized.

    Raises:
        InvalidQuery: The request is malformed.
    """
    if not isinstance(request, dict):
        raise InvalidQuery("Find request must be an object.")
    selector = request.get("selector")
    if not isinstance(selector, dict):
        raise InvalidQuery("Find request requires a selector object.")

    fields = request.get("fields")
    if fields is not None and (
        not isinstance(fields, list) or not all(isinstance(f, str) for f in fields)
    ):
        raise InvalidQuery("fields must be an array of field names.")

    for name in ("limit", "skip"):
        value = request.get(name)
        if value is not None and (not isinstance(value, int) or value < 0):
            raise InvalidQuery(f"{name} must be a non-negative integer.")

    return {
        "selector": selector,
        "fields": fields,
        "sort": normalize_sort(request.get("sort")),
        "limit": request.get("limit"),
        "skip": request.get("skip") or 0,
    }


def normalize_sort(sort: Any) -> list[tuple[str, str]]:
    """Turn ``["a", {"b": "desc"}]`` into ``[("a", "asc"), ("b", "desc")]``."""
    if sort is None:
        return []
    if not isinstance(sort, list):
        raise InvalidQuery("sort must be an array.")

    result = []
    for item in sort:
        if isinstance(item, str):
            result.append((item, "asc"))
        elif isinstance(item, dict) and len(item) == 1:
            field, direction = next(iter(item.items()))
            if direction not in ("asc", "desc"):
                raise InvalidQuery(f"Sort direction must be asc or desc, got {direction!r}")
            result.append((field, direction))
        else:
            raise InvalidQuery(f"Invalid sort item: {item!r}")
    return result


def sort_docs(docs: list[dict[str, Any]], sort: list[tuple[str, str]]) -> list[dict[str, Any]]:
    """Stable multi-key sort; missing fields sort as null."""
    result = list(docs)
    for field, direction in reversed(sort):
        def key(doc: dict[str, Any], field: str = field) -> tuple:
            value = get_field(doc, field)
            return collation_key(None if value is MISSING else value)

        result.sort(key=key, reverse=(direction == "desc"))
    return result


def project(doc: dict[str, Any], fields: list[str] | None) -> dict[str, Any]:
    """Keep only ``fields`` (dotted paths allowed)."""
    if not fields:
        return doc

    result: dict[str, Any] = {}
    for path in fields:
        value = get_field(doc, path)
        if value is MISSING:
            continue
        target = result
        parts = path.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return result

"""
Predicate matching and update application for schema-less documents.

Field paths are dot-addressed. Traversal steps into arrays transparently, so
``{"attendees.studentId": "s1"}`` matches a document whose ``attendees``
array holds an object with ``studentId == "s1"``, and ``{"memberIds": "s1"}``
matches when the ``memberIds`` array contains ``"s1"``.

Supported predicate operators: ``$in``, ``$ne``, ``$exists``, ``$gt``,
``$gte``, ``$lt``, ``$lte``.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

Document = Dict[str, Any]
Predicate = Dict[str, Any]

_MISSING = object()


@dataclass
class Update:
    """A patch applied by ``update_many``.

    Attributes:
        set: Field path to new value.
        unset: Field paths to remove.
        pull: Array field path to a condition. Array elements equal to the
            condition are removed; when the condition is a dict, object
            elements whose sub-fields all match are removed.
        replace: Field path to ``(old, new)``. Every value reachable through
            the path that equals ``old`` is replaced by ``new``.
    """

    set: Dict[str, Any] = field(default_factory=dict)
    unset: List[str] = field(default_factory=list)
    pull: Dict[str, Any] = field(default_factory=dict)
    replace: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.set or self.unset or self.pull or self.replace)


def resolve_path(node: Any, path: str) -> List[Any]:
    """Return every value reachable through a dotted path."""
    return _resolve(node, path.split("."))


def _resolve(node: Any, parts: List[str]) -> List[Any]:
    if not parts:
        return [node]
    if isinstance(node, list):
        return [value for item in node for value in _resolve(item, parts)]
    if isinstance(node, dict) and parts[0] in node:
        return _resolve(node[parts[0]], parts[1:])
    return []


def _candidates(document: Document, path: str) -> List[Any]:
    values: List[Any] = []
    for value in resolve_path(document, path):
        if isinstance(value, list):
            values.extend(value)
        values.append(value)
    return values


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    # Backends that serialize to JSON hand datetimes back as ISO strings
    if isinstance(right, datetime) and isinstance(left, str):
        try:
            left = date_parser.isoparse(left)
        except ValueError:
            pass
    elif isinstance(left, datetime) and isinstance(right, str):
        try:
            right = date_parser.isoparse(right)
        except ValueError:
            pass
    if isinstance(left, datetime) and isinstance(right, datetime):
        if (left.tzinfo is None) != (right.tzinfo is None):
            left = left.replace(tzinfo=None)
            right = right.replace(tzinfo=None)
    return left, right


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, operand: Any) -> bool:
        if value is None:
            return False
        left, right = _coerce_pair(value, operand)
        try:
            return op(left, right)
        except TypeError:
            return False

    return check


_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": _compare(lambda a, b: a > b),
    "$gte": _compare(lambda a, b: a >= b),
    "$lt": _compare(lambda a, b: a < b),
    "$lte": _compare(lambda a, b: a <= b),
}


def _is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, dict)
        and bool(condition)
        and all(str(key).startswith("$") for key in condition)
    )


def _values_equal(candidate: Any, expected: Any) -> bool:
    left, right = _coerce_pair(candidate, expected)
    return bool(left == right)


def _match_condition(document: Document, path: str, condition: Any) -> bool:
    candidates = _candidates(document, path)

    if not _is_operator_dict(condition):
        return any(_values_equal(value, condition) for value in candidates)

    for operator, operand in condition.items():
        if operator == "$exists":
            if bool(resolve_path(document, path)) != bool(operand):
                return False
        elif operator == "$in":
            if not any(
                _values_equal(value, option)
                for value in candidates
                for option in operand
            ):
                return False
        elif operator == "$ne":
            if any(_values_equal(value, operand) for value in candidates):
                return False
        elif operator in _COMPARISONS:
            check = _COMPARISONS[operator]
            if not any(check(value, operand) for value in candidates):
                return False
        else:
            raise ValueError(f"Unsupported predicate operator: {operator}")

    return True


def matches(document: Document, predicate: Optional[Predicate]) -> bool:
    """Check whether a document satisfies every clause of a predicate."""
    if not predicate:
        return True
    return all(
        _match_condition(document, path, condition)
        for path, condition in predicate.items()
    )


def _set_path(document: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _unset_path(document: Document, path: str) -> None:
    parts = path.split(".")
    node: Any = document
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        node = node[part]
    if isinstance(node, dict):
        node.pop(parts[-1], None)


def _get_path(document: Document, path: str) -> Any:
    node: Any = document
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _element_matches(element: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and not _is_operator_dict(condition):
        return isinstance(element, dict) and all(
            _values_equal(element.get(key, _MISSING), value)
            for key, value in condition.items()
        )
    if _is_operator_dict(condition):
        return matches({"value": element}, {"value": condition})
    return _values_equal(element, condition)


def _replace_values(node: Any, parts: List[str], old: Any, new: Any) -> None:
    if isinstance(node, list):
        for index, item in enumerate(node):
            if len(parts) == 0 and _values_equal(item, old):
                node[index] = copy.deepcopy(new)
            else:
                _replace_values(item, parts, old, new)
        return
    if not parts or not isinstance(node, dict) or parts[0] not in node:
        return
    key, rest = parts[0], parts[1:]
    if not rest:
        current = node[key]
        if isinstance(current, list):
            _replace_values(current, [], old, new)
        elif _values_equal(current, old):
            node[key] = copy.deepcopy(new)
        return
    _replace_values(node[key], rest, old, new)


def apply_update(document: Document, update: Update) -> Tuple[Document, bool]:
    """
    Apply an update to a copy of a document.

    Returns:
        The updated copy and whether anything changed
    """
    updated = copy.deepcopy(document)

    for path, value in update.set.items():
        _set_path(updated, path, copy.deepcopy(value))

    for path in update.unset:
        _unset_path(updated, path)

    for path, condition in update.pull.items():
        current = _get_path(updated, path)
        if isinstance(current, list):
            _set_path(
                updated,
                path,
                [item for item in current if not _element_matches(item, condition)],
            )

    for path, (old, new) in update.replace.items():
        _replace_values(updated, path.split("."), old, new)

    return updated, updated != document


def sort_documents(
    documents: List[Document], sort: Optional[List[Tuple[str, int]]]
) -> List[Document]:
    """Sort documents by ``(field, direction)`` pairs, 1 ascending, -1 descending."""
    if not sort:
        return documents
    ordered = list(documents)
    for path, direction in reversed(sort):

        def sort_key(doc: Document, path: str = path) -> Tuple[bool, str]:
            value = _get_path(doc, path)
            missing = value is _MISSING or value is None
            if isinstance(value, datetime):
                value = value.isoformat()
            return (missing, "" if missing else str(value))

        ordered.sort(key=sort_key, reverse=direction < 0)
    return ordered

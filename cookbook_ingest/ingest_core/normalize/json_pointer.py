from __future__ import annotations

from typing import Any


class PointerError(ValueError):
    """A JSON pointer that cannot be resolved against a document."""


def parse_pointer(path: str) -> list[str]:
    if path is None or not path.strip():
        raise PointerError("Patch has empty path")
    if not path.startswith("/"):
        raise PointerError(f"Patch path must start with '/': {path}")
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def _index(token: str, size: int, *, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return size
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise PointerError(f"Invalid array index: {token}")
    index = int(token)
    limit = size if allow_end else size - 1
    if index > limit:
        raise PointerError(f"Array index out of bounds: {index}")
    return index


def _child(node: Any, token: str) -> Any:
    if isinstance(node, dict):
        if token not in node:
            raise PointerError(f"Path segment not found: {token}")
        return node[token]
    if isinstance(node, list):
        return node[_index(token, len(node), allow_end=False)]
    raise PointerError(f"Cannot descend into {type(node).__name__} at '{token}'")


def resolve(document: Any, path: str) -> Any:
    node = document
    for token in parse_pointer(path):
        node = _child(node, token)
    return node


def _parent(document: Any, tokens: list[str]) -> Any:
    node = document
    for token in tokens[:-1]:
        node = _child(node, token)
    return node


def apply_operation(document: Any, op: str, path: str, value: Any = None) -> Any:
    """Apply one add/replace/remove in place; returns the value it displaced."""
    tokens = parse_pointer(path)
    parent = _parent(document, tokens)
    last = tokens[-1]

    if isinstance(parent, dict):
        if op == "add":
            previous = parent.get(last)
            parent[last] = value
            return previous
        if last not in parent:
            raise PointerError(f"Path does not exist: {path}")
        if op == "replace":
            previous = parent[last]
            parent[last] = value
            return previous
        if op == "remove":
            return parent.pop(last)
        raise PointerError(f"Unknown operation: {op}")

    if isinstance(parent, list):
        if op == "add":
            parent.insert(_index(last, len(parent), allow_end=True), value)
            return None
        index = _index(last, len(parent), allow_end=False)
        if op == "replace":
            previous = parent[index]
            parent[index] = value
            return previous
        if op == "remove":
            return parent.pop(index)
        raise PointerError(f"Unknown operation: {op}")

    raise PointerError(f"Cannot modify {type(parent).__name__} at {path}")

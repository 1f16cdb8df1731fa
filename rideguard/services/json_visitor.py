# rideguard/services/json_visitor.py
"""
Depth-bounded traversal over JSON-like values.

A value is one of: object (mapping), array (list/tuple), string, or a
scalar (int, float, bool, None). Subclasses override the `visit_*` hooks;
the default implementation rebuilds the value unchanged.
"""
from typing import Any, Dict, List, Mapping, Sequence

from rideguard.core.exceptions import SanitizationDepthError

DEFAULT_MAX_DEPTH = 32


def join_path(path: str, part: Any) -> str:
    return f"{path}.{part}" if path else str(part)


class JsonVisitor:
    """
    Dispatches over the JSON value variants.

    Containers nested more than `max_depth` levels raise
    SanitizationDepthError instead of exhausting the stack.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.max_depth = max_depth

    def visit(self, value: Any, path: str = "", depth: int = 0) -> Any:
        if isinstance(value, Mapping):
            self._check_depth(path, depth)
            return self.visit_object(value, path, depth)
        if isinstance(value, (list, tuple)):
            self._check_depth(path, depth)
            return self.visit_array(value, path, depth)
        if isinstance(value, str):
            return self.visit_string(value, path)
        return self.visit_scalar(value, path)

    def _check_depth(self, path: str, depth: int) -> None:
        if depth >= self.max_depth:
            raise SanitizationDepthError(self.max_depth, location=path or None)

    def visit_object(self, obj: Mapping, path: str, depth: int) -> Dict[str, Any]:
        return {
            key: self.visit(value, join_path(path, key), depth + 1)
            for key, value in obj.items()
        }

    def visit_array(self, items: Sequence, path: str, depth: int) -> List[Any]:
        return [
            self.visit(item, join_path(path, index), depth + 1)
            for index, item in enumerate(items)
        ]

    def visit_string(self, value: str, path: str) -> Any:
        return value

    def visit_scalar(self, value: Any, path: str) -> Any:
        return value

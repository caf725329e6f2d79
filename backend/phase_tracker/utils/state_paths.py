"""Dotted-path helpers for the replicated combat state."""
import copy
from typing import Any, Dict, List


def split_path(path: str) -> List[str]:
    parts = [p for p in str(path or "").split(".") if p]
    if not parts:
        raise ValueError(f"invalid state path: {path!r}")
    return parts


def set_path(target: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    """Set ``value`` at a dotted path, creating intermediate dicts. Mutates ``target``."""
    parts = split_path(path)
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = copy.deepcopy(value)
    return target


def get_path(source: Dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = source
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node

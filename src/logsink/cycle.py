"""Encode cyclic metadata as plain JSON-compatible values and back.

`decycle` replaces every repeated dict/list with a `{"$ref": path}` placeholder,
where `path` is a JSONPath-like expression (`$["key"][0]`) pointing at the first
place the same object was seen. `retrocycle` rebuilds the references in place.
The encoding is interoperable with the `cycle.js` convention.
"""

from __future__ import annotations

import json
import re
from typing import Any

_REF_KEY = "$ref"

# `$` followed by any number of `[<int>]` or `["<json string>"]` selectors.
_REF_PATH_RE = re.compile(r'^\$(?:\[(?:\d+|"(?:[^"\\]|\\.)*")\])*$')
_SELECTOR_RE = re.compile(r'\[(\d+|"(?:[^"\\]|\\.)*")\]')


def decycle(value: Any) -> Any:
    """Return a copy of `value` with repeated containers replaced by `$ref` markers.

    Dicts become dicts with string keys and tuples become lists; leaves are passed
    through untouched. Raises `ValueError` when two keys of one dict share a
    string form (e.g. `1` and `"1"`).
    """
    seen: dict[int, str] = {}

    def walk(obj: Any, path: str) -> Any:
        if not isinstance(obj, (dict, list, tuple)):
            return obj

        ref = seen.get(id(obj))
        if ref is not None:
            return {_REF_KEY: ref}
        seen[id(obj)] = path

        if isinstance(obj, dict):
            out: dict[str, Any] = {}
            originals: dict[str, Any] = {}
            for key, item in obj.items():
                name = str(key)
                if name in originals:
                    raise ValueError(
                        f"Keys {originals[name]!r} and {key!r} at {path} both map to {name!r}"
                    )
                originals[name] = key
                out[name] = walk(item, f"{path}[{json.dumps(name)}]")
            return out
        return [walk(item, f"{path}[{index}]") for index, item in enumerate(obj)]

    return walk(value, "$")


def _is_ref(obj: Any) -> bool:
    if not isinstance(obj, dict) or len(obj) != 1:
        return False
    path = obj.get(_REF_KEY)
    return isinstance(path, str) and _REF_PATH_RE.match(path) is not None


def _resolve(root: Any, path: str) -> Any:
    node = root
    for selector in _SELECTOR_RE.findall(path):
        node = node[json.loads(selector)]
    return node


def retrocycle(value: Any) -> Any:
    """Restore the references encoded by `decycle`, mutating `value` in place.

    Returns `value` for convenience.
    """

    def walk(obj: Any) -> None:
        if isinstance(obj, dict):
            slots = list(obj.items())
        elif isinstance(obj, list):
            slots = list(enumerate(obj))
        else:
            return

        for key, item in slots:
            if _is_ref(item):
                obj[key] = _resolve(value, item[_REF_KEY])
            else:
                walk(item)

    walk(value)
    return value

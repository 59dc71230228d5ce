import re
from typing import Any, List, Union

_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

_MISSING = object()


def parse_json_path(path: str) -> List[Union[str, int]]:
    """
    Split a dotted/indexed path such as `data.items[0].name` into
    ["data", "items", 0, "name"]. A leading `$` root marker is ignored.
    """
    path = (path or "").strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    steps: List[Union[str, int]] = []
    for key, index in _TOKEN.findall(path):
        if index:
            steps.append(int(index))
        else:
            steps.append(int(key) if key.isdigit() else key)
    return steps


def extract_json_path(document: Any, path: str, default: Any = None) -> Any:
    current = document
    for step in parse_json_path(path):
        current = _step_into(current, step)
        if current is _MISSING:
            return default
    return current


def _step_into(current: Any, step: Union[str, int]) -> Any:
    if isinstance(current, dict):
        if step in current:
            return current[step]
        # Numeric keys written as "0" in the path
        if isinstance(step, int) and str(step) in current:
            return current[str(step)]
        return _MISSING
    if isinstance(current, list) and isinstance(step, int):
        if -len(current) <= step < len(current):
            return current[step]
        return _MISSING
    return _MISSING

import re
import jsonpickle
from datetime import datetime, timezone
from typing import Optional


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> Optional[float]:
    """Parse a duration such as ``90s``, ``5m`` or ``1h30m`` into seconds.

    Returns ``None`` when the value is empty or not a well formed duration.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    pos, total = 0, 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        return None
    return total


def sort_dict_keys(d):
    """Recursively sort dictionary keys and handle nested structures.

    Args:
        d: Data structure (dict, list, or primitive type)

    Returns:
        Sorted version of the data structure
    """
    if isinstance(d, dict):
        return {key: sort_dict_keys(value) for key, value in sorted(d.items())}
    elif isinstance(d, list):
        return [sort_dict_keys(item) for item in d]
    else:
        return d


def canonicalize_dict(data):
    """
    Returns a canonical JSON representation of a dictionary.

    The JSON string uses sorted keys, which ensures that the representation
    of the dictionary remains consistent even when key order varies.
    This function works recursively for nested dictionaries and handles lists too.
    """
    return jsonpickle.dumps(sort_dict_keys(data), unpicklable=False)


def upsert_condition(conds, newc):
    """In-memory merge by .type. Only bump lastTransitionTime when status flips."""
    conds = list(conds or [])
    for i, c in enumerate(conds):
        if c.get("type") == newc["type"]:
            ltt = c.get("lastTransitionTime") or now()
            if c.get("status") != newc["status"]:
                ltt = now()
            merged = {**c, **newc, "lastTransitionTime": ltt}
            conds[i] = merged
            break
    else:
        conds.append({**newc, "lastTransitionTime": now()})
    return conds


def json_pointer_escape(key: str) -> str:
    """Escape a key for use as a JSON pointer (RFC 6901) segment."""
    return key.replace("~", "~0").replace("/", "~1")

import json
from typing import Any, Optional
from decimal import Decimal
from datetime import datetime, date


def make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dump_json(value: Any) -> Optional[str]:
    """Serialize a payload for a TEXT column; None stays NULL."""
    if value is None:
        return None
    return json.dumps(make_json_safe(value))


def load_json(raw: Any, default: Any = None) -> Any:
    """Inverse of dump_json; tolerates drivers that already decoded JSON."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)

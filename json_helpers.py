"""
JSON Helpers
============
Turns gateway objects (views, results, notifications, enums, timestamps)
into plain structures for WebSocket frames, MQTT payloads and API bodies.
"""
import dataclasses
import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger("json_helpers")

_PRIMITIVES = (str, int, float, bool)


def serialise_value(value: Any) -> Any:
    """
    Convert ``value`` into something ``json.dumps`` accepts.

    Order matters: enums before primitives (Action and Phase are str
    subclasses), ``to_dict()`` before generic dataclass expansion so that
    CommandResult controls its own shape. Dataclass fields declared with
    ``repr=False`` (raw vendor payloads) are left out.
    """
    if value is None:
        return None

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, _PRIMITIVES):
        return value

    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    to_dict = getattr(value, 'to_dict', None)
    if callable(to_dict):
        try:
            return serialise_value(to_dict())
        except Exception as e:
            logger.debug(f"{type(value).__name__}.to_dict() failed: {e}")

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: serialise_value(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if f.repr
        }

    if isinstance(value, dict):
        return {serialise_key(k): serialise_value(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialise_value(item) for item in value]

    if hasattr(value, '__dict__'):
        return serialise_value({k: v for k, v in vars(value).items() if not k.startswith('_')})

    try:
        return str(value)
    except Exception as e:
        logger.warning(f"Cannot serialise {type(value).__name__}: {e}")
        return f"<{type(value).__name__}>"


def serialise_key(key: Any) -> str:
    """JSON object keys must be strings."""
    if isinstance(key, Enum):
        return str(key.value)
    if isinstance(key, bytes):
        return key.hex()
    if key is None:
        return "null"
    return key if isinstance(key, str) else str(key)


def safe_json_dumps(obj: Any, **kwargs) -> str:
    """json.dumps that degrades to an error object instead of raising."""
    try:
        return json.dumps(serialise_value(obj), **kwargs)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON encoding of {type(obj).__name__} failed: {e}")
        return json.dumps({"error": "serialisation_failed", "type": type(obj).__name__})


def prepare_for_json(data: Any) -> Any:
    """Entry point used before FastAPI responses, WebSocket broadcasts and MQTT publishes."""
    return serialise_value(data)

"""
JSON utilities for cleaning LLM responses and serialising results.
"""

import dataclasses
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from .timestamp_utils import to_iso


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Dict[str, Any]:
    """Parse an LLM response that should hold a single JSON object.

    Raises:
        ValueError: If the cleaned response is not a JSON object
    """
    parsed = json.loads(clean_json_response(response))
    if not isinstance(parsed, dict):
        raise ValueError(f'Expected a JSON object, got {type(parsed).__name__}')
    return parsed


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into plain JSON-compatible values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value

"""
winfleet/models/validator.py

Helpers for validating untyped data (e.g. `kubectl -o json` output) against
pydantic-based types using TypeAdapter.
"""

import json
from typing import Any, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def parse_json_as(raw: str, expected_type: Type[T]) -> T:
    """
    Parse a JSON document and validate it against `expected_type`.

    Raises:
        ValueError: If the document is not JSON or fails validation.
    """
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON for type {expected_type}: {e}") from e
    return validate_type(obj, expected_type)

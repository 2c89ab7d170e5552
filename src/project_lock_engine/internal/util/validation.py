from __future__ import annotations

from collections.abc import Mapping
from typing import Any


def validate_typed_dict(
    desc: str,
    mapping: Mapping[str, Any],
    validation_type: type,
    value_type: type | tuple[type, ...],
) -> None:
    """
    Validates a mapping against a given TypedDict definition for its keys and values.

    Args:
        desc: Description of the mapping being validated, used for error messages.
        mapping: Mapping to be validated against the TypedDict definition.
        validation_type: TypedDict class to validate the keys of the mapping against.
        value_type: Expected type or tuple of types for the values in the mapping.

    Raises:
        ValueError: If there are keys in the mapping that are not allowed by the TypedDict
            definition, or if the values in the mapping do not match the expected type(s).
    """
    allowed_keys = set(validation_type.__annotations__.keys())
    bad_keys = set(mapping.keys()) - allowed_keys
    if bad_keys:
        raise ValueError(f"Invalid {desc} keys: {sorted(bad_keys)}")
    bad_vals = [
        (k, type(v).__name__)
        for k, v in mapping.items()
        if not isinstance(v, value_type)
    ]
    if bad_vals:
        details = ", ".join(f"{k} (got {t})" for k, t in bad_vals)
        expected = (
            value_type.__name__
            if isinstance(value_type, type)
            else " | ".join(t.__name__ for t in value_type)
        )
        raise ValueError(f"Invalid {desc} values: expected {expected}; {details}")

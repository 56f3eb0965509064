"""Validation utilities for DockPilot configuration."""

from pydantic import ValidationError as PydanticValidationError


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per field.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        List of ``Field '<path>': <message>`` strings
    """
    errors: list[str] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "unknown"
        errors.append(f"Field '{field_path}': {error.get('msg', 'Unknown error')}")
    return errors if errors else ["Validation failed with unknown error"]


def first_error_field(exc: PydanticValidationError) -> str:
    """Return the dotted path of the first failing field."""
    for error in exc.errors():
        loc = error.get("loc", ())
        if loc:
            return ".".join(str(item) for item in loc)
    return "unknown"

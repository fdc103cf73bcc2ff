"""Validation utilities for skiff configuration."""

from pydantic import ValidationError as PydanticValidationError

from skiff.lib.errors import Violation


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten Pydantic ValidationError into human-readable messages.

    Converts Pydantic's nested error structure into a flat list of
    user-friendly error messages that include field names and descriptions.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        List of human-readable error messages, one per field error
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "unknown"

        msg = error.get("msg", "Unknown error")
        error_type = error.get("type", "")

        if error_type == "value_error":
            input_val = error.get("input")
            formatted = f"Field '{field_path}': {msg} (received: {input_val!r})"
        else:
            formatted = f"Field '{field_path}': {msg}"

        errors.append(formatted)

    return errors if errors else ["Validation failed with unknown error"]


def pydantic_violations(
    exc: PydanticValidationError, location: str, rule: str = "schema"
) -> list[Violation]:
    """Convert a pydantic error into violations anchored at one location."""
    return [
        Violation(location=location, rule=rule, message=message)
        for message in flatten_pydantic_errors(exc)
    ]

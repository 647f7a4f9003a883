"""
Option validation shared by the built-in clients.

validate_options() checks the connection handle against the client's handle
type, then lets ClientConfig (strict mode) validate the remaining options.
Pydantic validates fields in declaration order, so the first error it reports
is the first offending option in the order

    connection, list_name, working_list_name,
    max_number_of_items, pipeline_timeout, config

and it is re-raised as ConfigValidationError with the option name, the
expected shape, and the value received:

    validate_options({"connection": conn, "list_name": ""}, Redis)
    # ConfigValidationError: expected list_name to be a non empty string, got: ''

Optional options that are absent (or None) fall back to the model defaults.
Unknown keys are ignored so a single options mapping can carry settings for
both the producer and its client.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from relq.domain.errors import ConfigValidationError
from relq.domain.models import MAX_NUMBER_OF_ITEMS_ALLOWED, ClientConfig

_REQUIRED = ("list_name", "working_list_name")
_OPTIONAL = ("max_number_of_items", "pipeline_timeout", "config")

_EXPECTED: dict[str, str] = {
    "list_name": "a non empty string",
    "working_list_name": "a non empty string",
    "max_number_of_items": f"an integer between 1 and {MAX_NUMBER_OF_ITEMS_ALLOWED}",
    "pipeline_timeout": "a positive timedelta",
    "config": "a mapping",
}


def validate_options(
    options: Mapping[str, Any],
    connection_type: type | tuple[type, ...],
) -> ClientConfig:
    """Return a ClientConfig built from options, or raise ConfigValidationError."""
    connection = options.get("connection")
    if connection is None or not isinstance(connection, connection_type):
        raise ConfigValidationError(
            "connection", f"an instance of {_type_names(connection_type)}", connection
        )

    data: dict[str, Any] = {"connection": connection}
    data.update((key, options.get(key)) for key in _REQUIRED)
    data.update(
        (key, options[key]) for key in _OPTIONAL if options.get(key) is not None
    )

    try:
        return ClientConfig.model_validate(data, strict=True)
    except ValidationError as exc:
        option = str(exc.errors()[0]["loc"][0])
        raise ConfigValidationError(
            option, _EXPECTED.get(option, "valid"), data.get(option)
        ) from None


def validate_receive_interval(value: Any) -> timedelta:
    """Producer-side option: a non-negative timedelta."""
    if not isinstance(value, timedelta) or value < timedelta(0):
        raise ConfigValidationError(
            "receive_interval", "a non-negative timedelta", value
        )
    return value


def _type_names(types: type | tuple[type, ...]) -> str:
    if isinstance(types, tuple):
        return " or ".join(t.__name__ for t in types)
    return types.__name__

"""Utility functions and helpers."""

from mpw_api.utils.logging import JSONFormatter, configure_json_logging
from mpw_api.utils.records import (
    as_identifier,
    as_number,
    as_string,
    get_nested,
    is_record,
    parse_datetime,
)
from mpw_api.utils.sanitize import (
    sanitize_error_message,
    sanitize_obj,
    sanitize_str,
)

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "as_identifier",
    "as_number",
    "as_string",
    "get_nested",
    "is_record",
    "parse_datetime",
    "sanitize_error_message",
    "sanitize_obj",
    "sanitize_str",
]

"""Request helpers shared by the JSON pass-through routers."""

import json
from typing import Any

from fastapi import Request

from mpw_api.errors import ValidationError


async def read_object_body(request: Request) -> dict[str, Any]:
    """Return the JSON object body.

    Raises:
        ValidationError: ``invalid_json`` if undecodable, ``invalid_body`` if
            missing or not an object
    """
    raw_body = await request.body()
    if not raw_body.strip():
        raise ValidationError("invalid_body")
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("invalid_json") from None
    if not isinstance(body, dict):
        raise ValidationError("invalid_body")
    return body


async def read_optional_object_body(request: Request) -> dict[str, Any]:
    """Like read_object_body, but anything other than a JSON object yields {}."""
    try:
        return await read_object_body(request)
    except ValidationError:
        return {}

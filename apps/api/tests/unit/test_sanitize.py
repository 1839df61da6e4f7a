"""Tests for log redaction and persisted error normalization."""

from mpw_api.utils.sanitize import (
    MAX_ERROR_LENGTH,
    sanitize_error_message,
    sanitize_obj,
    sanitize_str,
)


def test_bearer_token_redacted() -> None:
    assert sanitize_str("auth failed: Bearer APP_USR-123-abc") == "auth failed: [REDACTED]"


def test_mercadopago_access_token_redacted() -> None:
    assert "APP_USR-" not in sanitize_str("token APP_USR-8831-xyz leaked")
    assert "TEST-1234" not in sanitize_str("using TEST-12345678-abcdef")


def test_long_string_truncated_with_digest() -> None:
    result = sanitize_str("a" * 5000)

    assert result.startswith("[TRUNCATED len=5000 sha256=")


def test_sensitive_keys_redacted_recursively() -> None:
    result = sanitize_obj(
        {
            "headers": {"x-signature": "ts=1,v1=abc", "X-Internal-Token": "t"},
            "payer": [{"email": "a@b.c", "name": "Ana"}],
            "status": "approved",
        }
    )

    assert result == {
        "headers": {"x-signature": "[REDACTED]", "X-Internal-Token": "[REDACTED]"},
        "payer": [{"email": "[REDACTED]", "name": "Ana"}],
        "status": "approved",
    }


def test_depth_limit() -> None:
    nested: dict = {}
    current = nested
    for _ in range(10):
        current["next"] = {}
        current = current["next"]

    result = sanitize_obj(nested)

    for _ in range(6):
        result = result["next"]
    assert result == "[DEPTH_LIMIT]"


def test_error_message_whitespace_and_cap() -> None:
    assert sanitize_error_message("a\n\tb   c ") == "a b c"
    assert len(sanitize_error_message("x" * 1000)) == MAX_ERROR_LENGTH


def test_error_message_from_exception_without_text() -> None:
    assert sanitize_error_message(TimeoutError()) == "TimeoutError"
    assert sanitize_error_message(None) == "unknown_error"

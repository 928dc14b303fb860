"""Provider error classification for Gemini calls.

Errors reach the pipeline in several shapes: google-genai ``APIError``
(``code`` int, ``status`` string like "RESOURCE_EXHAUSTED", ``details`` holding
the JSON error body), httpx errors carrying a ``response``, and ad-hoc
exceptions or mappings with ``status`` / ``error.code`` fields. Every helper
here reads fields by capability (attribute or mapping key) instead of checking
SDK classes, and never raises.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

RETRYABLE_STATUS_CODES = frozenset({429, 503})
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"

_RATE_LIMIT_RE = re.compile(r"quota|too many requests|rate limit", re.IGNORECASE)
_RETRY_DELAY_RE = re.compile(r"(\d+)(\.\d+)?s")

_MISSING = object()


def _field(obj: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an attribute, else None."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    try:
        value = getattr(obj, name, _MISSING)
    except Exception:  # noqa: BLE001
        # Properties on foreign SDK objects may raise; treat as absent
        return None
    return None if value is _MISSING else value


def _to_status(value: Any) -> int | None:
    """Accept ints and numeric strings; bools and other strings are not statuses."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
    return None


def message_of(error: Any) -> str:
    """Best-effort human-readable message for any raised value."""
    nested = _field(error, "error")
    nested_message = _field(nested, "message") if not isinstance(nested, str) else None
    if isinstance(nested_message, str) and nested_message:
        return nested_message
    message = _field(error, "message")
    if isinstance(message, str) and message:
        return message
    if isinstance(error, BaseException):
        return str(error)
    return ""


def status_of(error: Any) -> int | None:
    """Extract an HTTP-like status code from an error, or None.

    Lookup order: ``status`` (int, then numeric string), nested ``error.code``,
    then SDK-specific carriers (``code``, ``status_code``, ``response.status_code``,
    ``details["error"]["code"]``).
    """
    if error is None:
        return None

    status = _to_status(_field(error, "status"))
    if status is not None:
        return status

    nested = _field(error, "error")
    if nested is not None and not isinstance(nested, str):
        status = _to_status(_field(nested, "code"))
        if status is not None:
            return status

    for name in ("code", "status_code"):
        status = _to_status(_field(error, name))
        if status is not None:
            return status

    status = _to_status(_field(_field(error, "response"), "status_code"))
    if status is not None:
        return status

    body = _field(error, "details")
    if isinstance(body, Mapping):
        return _to_status(_field(_field(body, "error"), "code"))
    return None


def is_retryable(error: Any) -> bool:
    """True for 429/503 statuses or quota / rate-limit wording in the message."""
    if error is None:
        return False
    if status_of(error) in RETRYABLE_STATUS_CODES:
        return True
    return bool(_RATE_LIMIT_RE.search(message_of(error)))


def _details_from_message(message: str) -> Any | None:
    start = message.find("{")
    if start < 0:
        return None
    try:
        parsed = json.loads(message[start:])
    except ValueError:
        return None
    return _field(_field(parsed, "error"), "details")


def details_of(error: Any) -> Any | None:
    """Extract provider structured error details (usually a list of dicts)."""
    if error is None:
        return None

    explicit = _field(error, "error_details")
    if explicit:
        return explicit

    nested = _field(error, "error")
    if nested is not None and not isinstance(nested, str):
        nested_details = _field(nested, "details")
        if nested_details:
            return nested_details

    body = _field(error, "details")
    if isinstance(body, Mapping):
        body_details = _field(_field(body, "error"), "details")
        if body_details:
            return body_details
    elif isinstance(body, list) and body:
        return body

    message = message_of(error)
    if message:
        return _details_from_message(message)
    return None


def suggested_delay_ms(details: Any) -> int | None:
    """Parse a RetryInfo ``retryDelay`` such as "13.5s" into milliseconds."""
    if not isinstance(details, list):
        return None
    retry_info = next(
        (d for d in details if isinstance(d, Mapping) and d.get("@type") == RETRY_INFO_TYPE),
        None,
    )
    if retry_info is None:
        return None
    delay = retry_info.get("retryDelay")
    if not isinstance(delay, str):
        return None
    match = _RETRY_DELAY_RE.search(delay)
    if match is None:
        return None
    seconds = float(match.group(0)[:-1])
    return max(0, round(seconds * 1000))

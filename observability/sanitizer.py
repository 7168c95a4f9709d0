"""
Payload Sanitizer & Error Formatter

Pure helpers that make arbitrary request/response data safe to store:
secrets are redacted, deep or wide structures are bounded, oversized
payloads are replaced by a marker, and exceptions are flattened into a
structured error record.

DESIGN RULES:
- Pure functions, no I/O
- Never raise (tracing must not break the automation it observes)
- sanitize() is idempotent: sanitize(sanitize(x)) == sanitize(x)
"""

import json
import logging
import traceback
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from observability.models import JsonValue, empty_error

logger = logging.getLogger(__name__)


REDACTED = "[REDACTED]"
DEPTH_MARKER = "[truncated]"
TRUNCATION_SUFFIX = "...[truncated]"

DEFAULT_MAX_DEPTH = 5
MAX_STRING_LENGTH = 500
MAX_LIST_ITEMS = 20
DEFAULT_MAX_PAYLOAD_SIZE = 50_000
PREVIEW_LENGTH = 1000

MAX_STACK_FRAMES = 15
MAX_STACK_LENGTH = 2000

SENSITIVE_HEADERS = (
    "authorization",
    "x-api-key",
    "cookie",
    "set-cookie",
    "x-auth-token",
    "api-key",
    "bearer",
    "x-confido-signature",
    "x-webhook-signature",
)

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "authorization",
    "key",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "bearer",
    "credential",
    "signature",
)

# Storage rejects non-ASCII field names; common typographic characters are
# mapped to ASCII first, anything else is dropped.
_KEY_TRANSLATION = str.maketrans({
    "—": "-",
    "–": "-",
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
})

_THIRD_PARTY_MARKERS = ("site-packages", "dist-packages")


# ============================================================
# HEADERS
# ============================================================

def sanitize_headers(headers: Any) -> Dict[str, Any]:
    """
    Redact sensitive header values.

    Matching is a case-insensitive substring test against SENSITIVE_HEADERS.
    Non-matching headers pass through unchanged.
    """
    if not isinstance(headers, Mapping) and not hasattr(headers, "items"):
        return {}

    try:
        sanitized: Dict[str, Any] = {}
        for key, value in headers.items():
            name = str(key)
            lowered = name.lower()
            if any(sensitive in lowered for sensitive in SENSITIVE_HEADERS):
                sanitized[name] = REDACTED
            else:
                sanitized[name] = value
        return sanitized
    except Exception as e:
        logger.warning(f"Failed to sanitize headers: {e}")
        return {}


# ============================================================
# RECURSIVE SANITIZE
# ============================================================

def normalize_key(key: Any) -> str:
    """Make a mapping key storage-safe (ASCII only)."""
    text = str(key).translate(_KEY_TRANSLATION)
    return text.encode("ascii", "ignore").decode("ascii")


def _is_sensitive_key(*candidates: str) -> bool:
    for candidate in candidates:
        lowered = candidate.lower()
        if any(sensitive in lowered for sensitive in SENSITIVE_KEYS):
            return True
    return False


def _truncate_string(value: str) -> str:
    if len(value) <= MAX_STRING_LENGTH:
        return value
    keep = MAX_STRING_LENGTH - len(TRUNCATION_SUFFIX)
    return value[:keep] + TRUNCATION_SUFFIX


def _to_plain(value: Any) -> Any:
    """Convert common non-JSON types to JSON-native equivalents."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    return value


def sanitize(value: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> JsonValue:
    """
    Recursively sanitize a value for storage.

    Args:
        value: Any payload (dicts, lists, scalars, models)
        max_depth: Containers reached at depth 0 become DEPTH_MARKER

    Returns:
        A JSON-compatible value with secrets redacted and sizes bounded
    """
    value = _to_plain(value)

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return _truncate_string(value)

    if isinstance(value, Mapping):
        if max_depth <= 0:
            return DEPTH_MARKER
        result: Dict[str, JsonValue] = {}
        for raw_key, item in value.items():
            original = str(raw_key)
            key = normalize_key(original)
            if _is_sensitive_key(original, key):
                result[key] = REDACTED
            else:
                result[key] = sanitize(item, max_depth - 1)
        return result

    if isinstance(value, (list, tuple, set, frozenset)):
        if max_depth <= 0:
            return DEPTH_MARKER
        items = list(value)[:MAX_LIST_ITEMS]
        return [sanitize(item, max_depth - 1) for item in items]

    return _truncate_string(str(value))


# ============================================================
# SIZE LIMITS
# ============================================================

def _serialize(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return repr(payload)


def truncate_payload(payload: Any, max_size: int = DEFAULT_MAX_PAYLOAD_SIZE) -> Any:
    """
    Replace an oversized payload with a marker object.

    Payloads whose serialized size is at or below `max_size` are returned
    unchanged.
    """
    if payload is None:
        return None

    try:
        text = _serialize(payload)
    except Exception as e:
        logger.warning(f"Failed to measure payload: {e}")
        return {"_truncated": True, "_original_size": -1, "_preview": ""}

    if len(text) <= max_size:
        return payload

    return {
        "_truncated": True,
        "_original_size": len(text),
        "_preview": text[:PREVIEW_LENGTH] + TRUNCATION_SUFFIX,
    }


def to_storable(value: Any, max_size: int = DEFAULT_MAX_PAYLOAD_SIZE) -> JsonValue:
    """Sanitize then size-bound a payload. This is what reaches a store."""
    try:
        return truncate_payload(sanitize(value), max_size)
    except Exception as e:
        logger.warning(f"Failed to prepare payload for storage: {e}")
        return None


# ============================================================
# ERRORS
# ============================================================

def _format_stack(error: BaseException) -> Optional[str]:
    tb = error.__traceback__
    if tb is None:
        return None

    frames = [
        frame for frame in traceback.extract_tb(tb)
        if not any(marker in frame.filename for marker in _THIRD_PARTY_MARKERS)
    ]
    frames = frames[-MAX_STACK_FRAMES:]

    lines: List[str] = ["Traceback (most recent call last):\n"]
    lines.extend(traceback.format_list(frames))
    lines.extend(traceback.format_exception_only(type(error), error))
    stack = "".join(lines).rstrip("\n")

    if len(stack) > MAX_STACK_LENGTH:
        stack = stack[:MAX_STACK_LENGTH] + "\n" + TRUNCATION_SUFFIX
    return stack


def _response_body(response: Any) -> Any:
    try:
        return response.json()
    except Exception:
        text = getattr(response, "text", None)
        return text if isinstance(text, str) else None


def _response_status(response: Any) -> Optional[int]:
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(response, "status", None)
    return status if isinstance(status, int) else None


def _format_exception(error: BaseException) -> Dict[str, Any]:
    message = str(error) or type(error).__name__
    response = getattr(error, "response", None)

    body = _response_body(response) if response is not None else None

    code = getattr(error, "code", None)
    if code is None and isinstance(body, dict):
        code = body.get("error") if isinstance(body.get("error"), (str, int)) else None

    http_status = _response_status(response) if response is not None else None
    if http_status is None:
        for attr in ("status_code", "status"):
            candidate = getattr(error, attr, None)
            if isinstance(candidate, int):
                http_status = candidate
                break

    return {
        "message": message,
        "stack": _format_stack(error),
        "code": str(code) if code is not None else None,
        "http_status": int(http_status) if http_status is not None else None,
        "raw": sanitize(body, 2) if body is not None else None,
    }


def _format_mapping(error: Mapping) -> Dict[str, Any]:
    http_status = error.get("http_status", error.get("httpStatus"))
    try:
        http_status = int(http_status) if http_status is not None else None
    except (TypeError, ValueError):
        http_status = None

    code = error.get("code")
    stack = error.get("stack")
    raw = error.get("raw")
    return {
        "message": str(error.get("message") or "Unknown error"),
        "stack": _truncate_stack_text(stack) if isinstance(stack, str) else None,
        "code": str(code) if code is not None else None,
        "http_status": http_status,
        "raw": sanitize(raw, 2) if raw is not None else None,
    }


def _truncate_stack_text(stack: str) -> str:
    if len(stack) > MAX_STACK_LENGTH:
        return stack[:MAX_STACK_LENGTH] + "\n" + TRUNCATION_SUFFIX
    return stack


def format_error(error: Any) -> Dict[str, Any]:
    """
    Flatten any error into {message, stack, code, http_status, raw}.

    Accepts exceptions, already-structured error mappings, plain strings and
    falsy values. Never raises.
    """
    if not error:
        return empty_error()

    try:
        if isinstance(error, BaseException):
            return _format_exception(error)
        if isinstance(error, Mapping):
            return _format_mapping(error)
        return empty_error(str(error))
    except Exception as e:
        logger.warning(f"Failed to format error: {e}")
        return empty_error()


# ============================================================
# CORRELATION IDS
# ============================================================

def _dig(body: Mapping, *path: str) -> Any:
    current: Any = body
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


# Aliases are tried in order; the first truthy value wins.
CORRELATION_ALIASES: Dict[str, tuple] = {
    "contact_id": (
        ("contactId",), ("contact_id",), ("contact-id",),
        ("customData", "contactId"), ("customData", "contact-id"),
        ("invoice", "contactDetails", "id"),
    ),
    "opportunity_id": (
        ("opportunityId",), ("opportunity_id",), ("opportunity-id",),
        ("customData", "opportunityId"), ("customData", "opportunity-id"),
        ("invoice", "opportunityDetails", "opportunityId"),
    ),
    "invoice_id": (
        ("invoice", "_id"), ("invoice", "id"), ("invoiceId",), ("invoice_id",),
        ("recordId",), ("id",),
    ),
    "appointment_id": (
        ("calendar", "appointmentId"), ("appointmentId",),
        ("appointment_id",), ("appointment-id",),
    ),
    "matter_id": (
        ("matterId",), ("matter_id",), ("data", "matter", "id"),
        ("customData", "matterId"),
    ),
}


def extract_context_ids(body: Any) -> Dict[str, str]:
    """
    Pull business correlation IDs out of an inbound payload.

    Only IDs that are present are returned, as strings.
    """
    if not isinstance(body, Mapping):
        return {}

    found: Dict[str, str] = {}
    for field_name, aliases in CORRELATION_ALIASES.items():
        for path in aliases:
            value = _dig(body, *path)
            if value not in (None, "", False) and not isinstance(value, (dict, list)):
                found[field_name] = str(value)
                break
    return found

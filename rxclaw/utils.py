"""Utility helpers used across ``rxclaw`` modules."""

import base64
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

# Numeric timestamps above this are milliseconds, below it seconds.
MS_TIMESTAMP_THRESHOLD = 10_000_000_000


def get_short_error_info(e: BaseException) -> str:
    """
    Get a short error information from an exception.

    Args:
        e (Exception): The exception to get the error information from.

    Returns:
        str: A short error information.
    """
    return f"{type(e).__name__}: {str(e)}"


# the function to get the full error information from an exception.
def get_full_error_info(e: BaseException) -> str:
    """
    Get the full error information from an exception.

    Args:
        e (Exception): The exception to get the error information from.

    Returns:
        str: The full error information.
    """
    return "".join(traceback.format_exception(type(e), e, e.__traceback__))


def platform_name() -> str:
    """Platform string reported in client descriptors."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


# ---------------- base64url ---------------- #


def b64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Inverse of :func:`b64url_encode`; tolerates missing padding."""
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


# ---------------- defensive JSON accessors ---------------- #


def first_non_empty(*values: str | None) -> str | None:
    """Return the first value that is a non-blank string."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return None


def get_str(obj: Any, key: str) -> str | None:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, str) else None


def get_bool(obj: Any, key: str) -> bool | None:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    return value if isinstance(value, bool) else None


def _get_number(obj: Any, key: str) -> int | float | None:
    if not isinstance(obj, dict):
        return None
    value = obj.get(key)
    # bool is an int subclass; JSON true is not a number
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def get_int(obj: Any, key: str) -> int:
    value = _get_number(obj, key)
    return int(value) if value is not None else 0


def get_float(obj: Any, key: str) -> float:
    value = _get_number(obj, key)
    return float(value) if value is not None else 0.0


def array_len(obj: Any, key: str) -> int:
    if not isinstance(obj, dict):
        return 0
    value = obj.get(key)
    return len(value) if isinstance(value, list) else 0


def parse_timestamp(raw: Any) -> datetime | None:
    """Normalize an epoch timestamp in seconds or milliseconds to UTC.

    Values above :data:`MS_TIMESTAMP_THRESHOLD` are taken as milliseconds.
    Non-numeric or out-of-range values yield ``None``.
    """
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    ms = raw if raw > MS_TIMESTAMP_THRESHOLD else raw * 1000
    try:
        return datetime.fromtimestamp(ms / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def get_timestamp(obj: Any, key: str) -> datetime | None:
    if not isinstance(obj, dict):
        return None
    return parse_timestamp(obj.get(key))


def parse_iso_datetime(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ---------------- labels ---------------- #


def truncate_label(text: str, max_len: int = 60) -> str:
    """Cut ``text`` to ``max_len`` characters, ending with an ellipsis."""
    if not text or len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def truncate_message(text: str, max_len: int = 200) -> str:
    """Notification body truncation: keep ``max_len`` chars, then an ellipsis."""
    return text if len(text) <= max_len else text[:max_len] + "…"


def shorten_path(path: str) -> str:
    """``/a/b/c/d.txt`` -> ``…/c/d.txt``; short paths keep their last part."""
    if not path:
        return path
    parts = path.replace("\\", "/").split("/")
    if len(parts) > 2:
        return f"…/{parts[-2]}/{parts[-1]}"
    return parts[-1]

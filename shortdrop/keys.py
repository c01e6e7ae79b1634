import re
import uuid
from datetime import date, datetime, timezone
from typing import Optional

MAX_FILENAME_LENGTH = 255

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_UNDERSCORE_RUNS = re.compile(r"_{2,}")


def sanitize_filename(filename: str) -> str:
    """Reduce *filename* to characters that are safe inside a storage key.

    Anything outside ``[A-Za-z0-9._-]`` becomes ``_``, runs of underscores are
    collapsed and the result is cut at 255 characters. The transformation is
    idempotent and an empty name stays empty.
    """

    sanitized = _UNSAFE_CHARS.sub("_", filename or "")
    sanitized = _UNDERSCORE_RUNS.sub("_", sanitized)
    return sanitized[:MAX_FILENAME_LENGTH]


def generate_key(
    original_filename: str,
    *,
    today: Optional[date] = None,
    unique_id: Optional[uuid.UUID] = None,
) -> str:
    """Return ``YYYY-MM-DD/<uuid4>/<sanitized-name>`` for a new object."""

    day = today or datetime.now(timezone.utc).date()
    identifier = unique_id or uuid.uuid4()
    return f"{day.isoformat()}/{identifier}/{sanitize_filename(original_filename)}"


def filename_from_key(key: str) -> str:
    return key.rsplit("/", 1)[-1]

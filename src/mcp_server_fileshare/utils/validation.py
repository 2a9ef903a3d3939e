from __future__ import annotations

import re
from pathlib import PurePosixPath, PureWindowsPath
from urllib.parse import quote

from ..errors import ValidationError
from ..share_codes import SHARE_CODE_PATTERN

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ ()\[\]+-]")
MAX_STORED_NAME_LENGTH = 200


def require_text(value: str | None, field: str) -> str:
    """Return the stripped value or raise ValidationError if it is blank."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def validate_share_code(share_code: str) -> str:
    """Check a caller-supplied share code against the code format."""
    if not isinstance(share_code, str) or not SHARE_CODE_PATTERN.match(share_code):
        raise ValidationError(
            "shareCode must be 8 characters drawn from A-Z and 0-9"
        )
    return share_code


def normalize_share_code(share_code: str | None) -> str:
    """Normalise user input the way the receive form does (trim, upper-case)."""
    return require_text(share_code, "shareCode").upper()


def storage_filename(file_id: str, original_filename: str) -> str:
    """Build the collision-resistant storage name ``{fileId}-{original}``.

    Directory components (POSIX or Windows) are dropped and characters outside
    a conservative set are replaced, so the result is always a single path
    segment.
    """
    base = PureWindowsPath(PurePosixPath(original_filename).name).name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip(" .") or "file"
    return f"{file_id}-{cleaned[:MAX_STORED_NAME_LENGTH]}"


def content_disposition(filename: str) -> str:
    """Build an ``attachment`` disposition, adding the RFC 5987 form for non-ASCII names."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    value = f'attachment; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return value

import mimetypes
import os
import re
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .errors import PathTraversalError

MAX_FILENAME_LENGTH = 255
DEFAULT_MIME_TYPE = "application/octet-stream"

_VALID_FILENAME_PATTERN = re.compile(r"[A-Za-z0-9 ._-]+")
_DISAMBIGUATED_STEM_PATTERN = re.compile(r"(?P<stem>.+) \((?P<counter>[1-9][0-9]*)\)")
_SEPARATOR_PATTERN = re.compile(r"[/\\]")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f]")
_HEADER_UNSAFE_PATTERN = re.compile(r'[<>:"|?*]')

# Types a browser renders without executing anything. Everything else is
# served as an attachment.
INLINE_SAFE_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/x-ms-bmp",
        "application/pdf",
        "text/plain",
        "text/csv",
        "application/json",
    }
)


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


def resolve_safe(root: Union[str, Path], candidate: str) -> Path:
    """Resolve *candidate* inside *root* or raise :class:`PathTraversalError`.

    Backslashes are treated as separators so Windows-style traversal
    sequences are rejected on every platform. Absolute candidates replace the
    root during joining and therefore always fail the containment check.
    """

    normalized_root = Path(root).resolve()
    normalized_candidate = (candidate or "").replace("\\", "/")
    try:
        resolved = (normalized_root / normalized_candidate).resolve()
    except (OSError, ValueError) as error:
        raise PathTraversalError(candidate, str(root)) from error

    if resolved != normalized_root and not str(resolved).startswith(
        str(normalized_root) + os.sep
    ):
        raise PathTraversalError(candidate, str(root))
    return resolved


def sanitize_filename(name: str) -> str:
    """Make *name* safe for Content-Disposition headers (display only)."""

    cleaned = _SEPARATOR_PATTERN.sub("_", name or "")
    cleaned = _CONTROL_CHAR_PATTERN.sub("", cleaned)
    cleaned = _HEADER_UNSAFE_PATTERN.sub("_", cleaned)
    return cleaned.strip()


def is_valid_filename(name: str) -> bool:
    if not name or len(name) > MAX_FILENAME_LENGTH:
        return False
    if name in {".", ".."}:
        return False
    return _VALID_FILENAME_PATTERN.fullmatch(name) is not None


def strip_disambiguator(name: str) -> str:
    """Return *name* without a trailing `` (k)`` added by the namer."""

    stem, ext = os.path.splitext(name)
    match = _DISAMBIGUATED_STEM_PATTERN.fullmatch(stem)
    if not match:
        return name
    return f"{match.group('stem')}{ext}"


def is_managed_filename(name: str) -> bool:
    """Accept valid names and the ``stem (k)ext`` variants the namer produces."""

    if is_valid_filename(name):
        return True
    if not name or len(name) > MAX_FILENAME_LENGTH:
        return False
    undecorated = strip_disambiguator(name)
    return undecorated != name and is_valid_filename(undecorated)


def extract_owner(filename: str) -> Optional[str]:
    """Derive the owning username from the ``<owner>_<rest>`` convention."""

    parts = (filename or "").split("_")
    if len(parts) >= 2 and parts[0]:
        return parts[0]
    return None


def can_access(role: Union[Role, str], username: Optional[str], filename: str) -> bool:
    if Role(role) is Role.ADMIN:
        return True
    return bool(username) and extract_owner(filename) == username


def unique_target_path(target_dir: Union[str, Path], filename: str) -> Path:
    """Return a free path for *filename* in *target_dir*, appending `` (k)`` if taken.

    Assumes a single writer; the check and the later write are not atomic.
    """

    directory = Path(target_dir)
    candidate = directory / filename
    if not candidate.exists():
        return candidate

    stem, ext = os.path.splitext(filename)
    counter = 1
    while True:
        candidate = directory / f"{stem} ({counter}){ext}"
        if not candidate.exists():
            return candidate
        counter += 1


def guess_mime_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_MIME_TYPE


def is_safe_for_inline(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type.split(";")[0].strip().lower() in INLINE_SAFE_MIME_TYPES

"""Listing, streaming and deletion of managed files for authenticated callers."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from . import storage
from .errors import AccessDeniedError, FileIntakeError, InvalidFilenameError, NotFoundError
from .guard import (
    Role,
    can_access,
    extract_owner,
    guess_mime_type,
    is_managed_filename,
    is_safe_for_inline,
    resolve_safe,
    sanitize_filename,
)

logger = logging.getLogger("fileintake.files")

DISPOSITIONS = ("inline", "attachment")


@dataclass(frozen=True)
class ManagedFile:
    name: str
    size: int
    extension: str
    modified_at: float
    created_at: float
    owner: Optional[str]

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "extension": self.extension,
            "modified_at": storage.isoformat_utc(self.modified_at),
            "created_at": storage.isoformat_utc(self.created_at),
            "owner": self.owner,
        }


@dataclass
class FileStream:
    handle: BinaryIO
    mime_type: str
    disposition: str
    download_name: str
    size: int


def _to_managed_file(name: str, stats: os.stat_result) -> ManagedFile:
    return ManagedFile(
        name=name,
        size=stats.st_size,
        extension=os.path.splitext(name)[1].lstrip(".").lower(),
        modified_at=stats.st_mtime,
        created_at=getattr(stats, "st_birthtime", stats.st_ctime),
        owner=extract_owner(name),
    )


def list_files(role, username: Optional[str], owner_filter: Optional[str] = None) -> List[ManagedFile]:
    """Return the managed files visible to the caller, newest first.

    Administrators see everything and may narrow the listing with
    *owner_filter*; other users only see files they own.
    """
    role = Role(role)
    root = storage.target_directory()
    if root is None or not root.is_dir():
        return []

    visible: List[ManagedFile] = []
    try:
        with os.scandir(root) as entries:
            for entry in entries:
                try:
                    if not entry.is_file():
                        continue
                    stats = entry.stat()
                except OSError as error:
                    # Removed by a concurrent sweep, or unreadable.
                    logger.debug("list_entry_skipped filename=%s error=%s", entry.name, error)
                    continue
                if not can_access(role, username, entry.name):
                    continue
                if role is Role.ADMIN and owner_filter and extract_owner(entry.name) != owner_filter:
                    continue
                visible.append(_to_managed_file(entry.name, stats))
    except OSError as error:
        logger.warning("list_files_failed directory=%s error=%s", root, error)

    visible.sort(key=lambda managed: managed.modified_at, reverse=True)
    return visible


def resolve_path(filename: str) -> Path:
    """Map a bare managed filename to an existing file inside the managed directory."""

    if not is_managed_filename(filename):
        raise InvalidFilenameError(filename)
    root = storage.target_directory()
    if root is None:
        raise NotFoundError(filename)
    path = resolve_safe(root, filename)
    if not path.is_file():
        raise NotFoundError(filename)
    return path


def _authorize(filename: str, role, username: Optional[str]) -> None:
    if not is_managed_filename(filename):
        raise InvalidFilenameError(filename)
    if not can_access(role, username, filename):
        logger.warning("file_access_denied filename=%s username=%s", filename, username)
        raise AccessDeniedError(filename, username)


def get_file_stream(filename: str, role, username: Optional[str], disposition: str = "inline") -> FileStream:
    """Open *filename* for streaming.

    Inline delivery is downgraded to an attachment for any type outside the
    inline allow-list. The caller owns the returned handle.
    """
    if disposition not in DISPOSITIONS:
        raise ValueError(f"Disposition must be one of {', '.join(DISPOSITIONS)}")

    _authorize(filename, role, username)
    path = resolve_path(filename)

    mime_type = guess_mime_type(filename)
    if disposition == "inline" and not is_safe_for_inline(mime_type):
        disposition = "attachment"

    try:
        handle = path.open("rb")
    except FileNotFoundError:
        raise NotFoundError(filename) from None
    size = os.fstat(handle.fileno()).st_size

    return FileStream(
        handle=handle,
        mime_type=mime_type,
        disposition=disposition,
        download_name=sanitize_filename(filename),
        size=size,
    )


def delete_file(filename: str, role, username: Optional[str], actor: Optional[str]) -> None:
    _authorize(filename, role, username)
    path = resolve_path(filename)
    try:
        path.unlink()
    except FileNotFoundError:
        raise NotFoundError(filename) from None

    storage.record_file_event(filename, str(path), "DELETED_MANUAL", actor=actor)
    logger.info("file_deleted filename=%s actor=%s", filename, actor)


def delete_all_files(role, username: Optional[str], actor: Optional[str]) -> Dict[str, object]:
    """Delete every file the caller can see, continuing past individual failures."""

    deleted = 0
    errors: List[str] = []
    for managed in list_files(role, username):
        try:
            delete_file(managed.name, role, username, actor)
        except (FileIntakeError, OSError) as error:
            errors.append(f"Failed to delete {managed.name}: {error}")
            continue
        deleted += 1

    logger.info("files_bulk_deleted count=%d errors=%d actor=%s", deleted, len(errors), actor)
    return {"deleted_count": deleted, "errors": errors}


def usage_summary(role, username: Optional[str]) -> Dict[str, object]:
    visible = list_files(role, username)
    return {
        "total_files": len(visible),
        "total_size": sum(managed.size for managed in visible),
    }

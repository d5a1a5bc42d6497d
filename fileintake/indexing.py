"""Ingestion of the configured source folder into managed storage.

Only the immediate files of the source folder are considered. Each file is
copied or moved into the managed directory and recorded in the audit log;
a failure on one file is reported in the result and never stops the run.
"""

import errno
import logging
import os
import shutil
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from . import storage
from .errors import ConfigurationError, InvalidFilenameError
from .guard import is_valid_filename, unique_target_path

logger = logging.getLogger("fileintake.indexing")

_MODE_ACTIONS = {"COPY": "COPIED", "MOVE": "MOVED"}


@dataclass
class IndexingResult:
    total_found: int = 0
    total_processed: int = 0
    skipped: int = 0
    target_dir: str = ""
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def test_source_access(folder: Optional[str] = None) -> Dict[str, object]:
    """Report whether *folder* (or the configured source) can be indexed."""

    folder = folder or storage.load_settings().get("source_folder")
    accessible, error = storage.check_source_access(folder)
    return {"source_folder": folder, "accessible": accessible, "error": error}


def run_indexing(mode: str, actor: Optional[str]) -> IndexingResult:
    """Reconcile the source folder into the managed directory.

    Raises :class:`ConfigurationError` when the source folder is missing or
    unreadable and :class:`OperationInProgressError` when another indexing
    run or a retention sweep is active.
    """
    mode = (mode or "").strip().upper()
    if mode not in _MODE_ACTIONS:
        raise ValueError(f"Indexing mode must be one of {', '.join(_MODE_ACTIONS)}")

    with storage.maintenance_slot("indexing"):
        return _run_indexing(mode, actor)


def _run_indexing(mode: str, actor: Optional[str]) -> IndexingResult:
    settings = storage.load_settings()
    source_folder = settings.get("source_folder")
    accessible, error = storage.check_source_access(source_folder)
    if not accessible:
        logger.warning("indexing_rejected source=%s error=%s", source_folder, error)
        raise ConfigurationError(error)

    source_dir = Path(str(source_folder))
    target_dir = storage.target_directory(settings)
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ConfigurationError(f"Cannot create target directory {target_dir}: {error}") from error

    try:
        with os.scandir(source_dir) as entries:
            names = sorted(entry.name for entry in entries if entry.is_file())
    except OSError as error:
        raise ConfigurationError(f"Failed to read source directory: {error}") from error

    result = IndexingResult(total_found=len(names), target_dir=str(target_dir))
    logger.info(
        "indexing_started mode=%s source=%s target=%s found=%d actor=%s",
        mode,
        source_dir,
        target_dir,
        result.total_found,
        actor,
    )

    for name in names:
        try:
            _ingest_file(name, source_dir, target_dir, mode, actor)
            result.total_processed += 1
        except (OSError, sqlite3.Error, InvalidFilenameError) as error:
            result.skipped += 1
            result.errors.append(f"{name}: {error}")
            logger.warning("file_ingest_failed filename=%s mode=%s error=%s", name, mode, error)

    storage.update_indexing_info(mode)
    logger.info(
        "indexing_completed mode=%s processed=%d skipped=%d",
        mode,
        result.total_processed,
        result.skipped,
    )
    return result


def _ingest_file(
    name: str, source_dir: Path, target_dir: Path, mode: str, actor: Optional[str]
) -> Path:
    if not is_valid_filename(name):
        raise InvalidFilenameError(name)

    source_path = source_dir / name
    previous_path = _previous_copy(source_path, target_dir)
    target_path = previous_path or unique_target_path(target_dir, name)

    source_left_behind = _stage_and_replace(source_path, target_path, mode)

    if previous_path is not None:
        removed = storage.delete_logs_for_filename(previous_path.name)
        logger.info(
            "file_replaced filename=%s source=%s removed_logs=%d",
            previous_path.name,
            source_path,
            removed,
        )

    action = _MODE_ACTIONS[mode]
    if source_left_behind:
        try:
            os.unlink(source_path)
        except OSError as error:
            # The source is still present, so this was effectively a copy.
            logger.warning(
                "source_unlink_failed filename=%s error=%s", name, error
            )
            action = _MODE_ACTIONS["COPY"]

    storage.record_file_event(
        target_path.name,
        str(target_path),
        action,
        actor=actor,
        source_path=str(source_path),
    )
    logger.info(
        "file_ingested filename=%s mode=%s target=%s", name, mode, target_path.name
    )
    return target_path


def _previous_copy(source_path: Path, target_dir: Path) -> Optional[Path]:
    """Return the managed copy of an earlier ingestion of *source_path*.

    Re-ingesting the same source file replaces that copy and restarts its log
    history. Returns ``None`` when the copy is gone or lives elsewhere.
    """
    previous = storage.latest_ingest_log(str(source_path))
    if previous is None:
        return None

    previous_path = Path(previous["local_path"])
    if previous_path.parent != target_dir or not previous_path.is_file():
        return None
    return previous_path


def _stage_and_replace(source_path: Path, target_path: Path, mode: str) -> bool:
    """Bring *source_path* into managed storage under *target_path*.

    The data is written to a hidden staging file next to the target and only
    renamed over it once complete, so a failed transfer never leaves a
    truncated file or destroys the copy being replaced. Returns ``True`` when
    a move fell back to copying and the source still has to be removed.
    """
    staging_path = target_path.with_name(f".{target_path.name}.part")
    renamed = False
    source_left_behind = False
    try:
        if mode == "COPY":
            shutil.copyfile(source_path, staging_path)
        else:
            renamed = _move_file(source_path, staging_path)
            source_left_behind = not renamed

        # Retention counts from the moment the file enters managed storage.
        now = time.time()
        os.utime(staging_path, (now, now))
        os.replace(staging_path, target_path)
    except Exception:
        if renamed:
            _restore_source(staging_path, source_path)
        elif staging_path.exists():
            try:
                staging_path.unlink()
            except OSError as cleanup_error:
                logger.error(
                    "staging_cleanup_failed path=%s error=%s", staging_path, cleanup_error
                )
        raise
    return source_left_behind


def _restore_source(staging_path: Path, source_path: Path) -> None:
    try:
        os.rename(staging_path, source_path)
    except OSError as error:
        logger.error(
            "source_restore_failed staged=%s source=%s error=%s",
            staging_path,
            source_path,
            error,
        )


def _move_file(source: Path, destination: Path) -> bool:
    """Rename *source* to *destination*, copying across filesystems.

    Returns ``False`` when the data was copied and *source* is still present.
    """
    try:
        os.rename(source, destination)
    except OSError as error:
        if error.errno != errno.EXDEV:
            raise
        shutil.copyfile(source, destination)
        return False
    return True

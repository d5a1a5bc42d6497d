import json
import logging
import math
import os
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from . import storage
from .errors import OperationInProgressError

logger = logging.getLogger("fileintake.retention")

SWEEP_INTERVAL_MINUTES = storage.safe_int_env("FILEINTAKE_SWEEP_INTERVAL_MINUTES", 15, min_value=1)
PRUNE_EMPTY_DIRS = storage.env_flag("FILEINTAKE_PRUNE_EMPTY_DIRS", True)


@dataclass
class RetentionResult:
    total_scanned: int = 0
    total_deleted: int = 0
    freed_bytes: int = 0
    deleted_directories: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def _managed_files(directory: Path) -> List[str]:
    with os.scandir(directory) as entries:
        return sorted(entry.name for entry in entries if entry.is_file())


def sweep(now: Optional[float] = None) -> RetentionResult:
    """Delete managed files whose modification time is older than the retention window.

    Raises :class:`OperationInProgressError` when indexing or another sweep
    holds the maintenance slot.
    """
    with storage.maintenance_slot("retention sweep"):
        return _sweep(time.time() if now is None else now)


def _sweep(now: float) -> RetentionResult:
    settings = storage.load_settings()
    window = storage.retention_window_seconds(settings)
    cutoff = now - window
    result = RetentionResult()

    target_dir = storage.target_directory(settings)
    if target_dir is None or not target_dir.is_dir():
        logger.info("retention_skipped reason=no_managed_directory")
        return result

    if window == 0:
        logger.warning(
            "retention_window_zero - every managed file older than now will be deleted"
        )

    try:
        names = _managed_files(target_dir)
    except OSError as error:
        result.errors.append(f"Retention cleanup failed: {error}")
        logger.error("retention_scan_failed directory=%s error=%s", target_dir, error)
        return result

    result.total_scanned = len(names)
    for name in names:
        path = target_dir / name
        try:
            stats = path.stat()
        except FileNotFoundError:
            continue
        except OSError as error:
            result.errors.append(f"{name}: Could not get file stats: {error}")
            continue

        if stats.st_mtime >= cutoff:
            continue

        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as error:
            result.errors.append(f"{name}: {error}")
            logger.warning("retention_delete_failed filename=%s error=%s", name, error)
            continue

        result.total_deleted += 1
        result.freed_bytes += stats.st_size
        storage.record_file_event(name, str(path), "DELETED_RETENTION", actor=None)
        logger.info(
            "file_expired_deleted filename=%s age_seconds=%d",
            name,
            int(now - stats.st_mtime),
        )

    if PRUNE_EMPTY_DIRS:
        result.deleted_directories = prune_empty_directories(target_dir)

    logger.info(
        "retention_sweep_completed scanned=%d deleted=%d freed_bytes=%d errors=%d",
        result.total_scanned,
        result.total_deleted,
        result.freed_bytes,
        len(result.errors),
    )
    return result


def prune_empty_directories(root: Path) -> int:
    """Remove empty sub-directories below *root*, deepest first. *root* itself is kept."""

    removed = 0
    root = Path(root)
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        directory = Path(dirpath)
        if directory == root:
            continue
        try:
            if any(directory.iterdir()):
                continue
            directory.rmdir()
        except OSError as error:
            logger.debug("prune_skipped directory=%s error=%s", directory, error)
            continue
        removed += 1
        logger.info("empty_directory_removed directory=%s", directory)
    return removed


def run_scheduled_sweep() -> Optional[RetentionResult]:
    """Entry point for the background scheduler."""

    try:
        return sweep()
    except OperationInProgressError:
        logger.info("retention_sweep_skipped reason=maintenance_in_progress")
    except Exception:
        logger.exception("retention_sweep_failed")
    return None


def next_sweep_at(now: Optional[float] = None) -> float:
    interval = SWEEP_INTERVAL_MINUTES * 60
    now = time.time() if now is None else now
    return (math.floor(now / interval) + 1) * interval


def retention_stats(now: Optional[float] = None) -> Dict[str, object]:
    """Summarise the retention window and what the next sweep would delete."""

    now = time.time() if now is None else now
    settings = storage.load_settings()
    window = storage.retention_window_seconds(settings)
    cutoff = now - window

    expiring = 0
    expiring_bytes = 0
    target_dir = storage.target_directory(settings)
    if target_dir is not None and target_dir.is_dir():
        try:
            names = _managed_files(target_dir)
        except OSError as error:
            logger.warning("retention_stats_scan_failed directory=%s error=%s", target_dir, error)
            names = []
        for name in names:
            try:
                stats = (target_dir / name).stat()
            except OSError:
                continue
            if stats.st_mtime < cutoff:
                expiring += 1
                expiring_bytes += stats.st_size

    return {
        "retention_days": settings["retention_days"],
        "retention_minutes": settings["retention_minutes"],
        "retention_seconds": window,
        "sweep_interval_minutes": SWEEP_INTERVAL_MINUTES,
        "next_sweep_at": storage.isoformat_utc(next_sweep_at(now)),
        "estimated_files_to_delete": expiring,
        "estimated_bytes_to_free": expiring_bytes,
        "sweep_running": storage.maintenance_running(),
    }


def main() -> int:
    """Run a single retention sweep, for cron or another external scheduler."""

    logging.basicConfig(
        level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    result = run_scheduled_sweep()
    if result is None:
        print("Retention sweep did not run, see the log for details.")
        return 1

    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())

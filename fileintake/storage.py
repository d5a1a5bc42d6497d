import json
import logging
import math
import os
import re
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, Iterator, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import ConfigurationError, LogWriteError, OperationInProgressError
from .guard import Role

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def safe_int_env(key: str, default: int, min_value: int = 0) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileintake.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def env_flag(key: str, default: bool) -> bool:
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


STORAGE_ROOT = _resolve_env_path("FILEINTAKE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILEINTAKE_DATA_DIR", STORAGE_ROOT / "data")
LOCAL_ROOT = _resolve_env_path("FILEINTAKE_LOCAL_ROOT", STORAGE_ROOT / "storage" / "local")
LOGS_DIR = _resolve_env_path("FILEINTAKE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "fileintake.db"
SETTINGS_PATH = DATA_DIR / "settings.json"

MAX_RETENTION_DAYS = 365
MAX_RETENTION_MINUTES = 1440
LOG_PAGE_DEFAULT = 20
LOG_PAGE_MAX = 100
RECENT_ACTIVITY_SECONDS = 24 * 3600

INDEXING_MODES = ("COPY", "MOVE")
FILE_ACTIONS = ("COPIED", "MOVED", "DELETED_RETENTION", "DELETED_MANUAL")
INGEST_ACTIONS = ("COPIED", "MOVED")

# Underscore separates owner from the rest of a filename, so it cannot
# appear in a username.
_USERNAME_PATTERN = re.compile(r"[A-Za-z0-9.-]{3,50}")
PASSWORD_MIN_LENGTH = 8

DEFAULT_SETTINGS = {
    "source_folder": os.environ.get("FILEINTAKE_DEFAULT_SOURCE") or None,
    "retention_days": safe_int_env("FILEINTAKE_RETENTION_DAYS", 7),
    "retention_minutes": safe_int_env("FILEINTAKE_RETENTION_MINUTES", 0),
    "last_indexing_at": None,
    "last_indexing_mode": None,
}

logger = logging.getLogger("fileintake.storage")

_maintenance_lock = threading.Lock()


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOCAL_ROOT.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


# Settings -----------------------------------------------------------------


def _coerce_non_negative_int(value, default: int) -> int:
    """Coerce *value* to a non-negative integer, rejecting NaN, infinity and bools."""
    if isinstance(value, bool):
        return int(default)
    try:
        coerced = float(value)
    except (TypeError, ValueError):
        return int(default)
    if math.isnan(coerced) or math.isinf(coerced) or coerced < 0:
        return int(default)
    return int(coerced)


def _normalize_settings(raw_settings: Dict[str, object]) -> Dict[str, object]:
    if not isinstance(raw_settings, dict):
        raw_settings = {}

    settings = DEFAULT_SETTINGS.copy()

    source_folder = raw_settings.get("source_folder")
    if isinstance(source_folder, str) and source_folder.strip():
        settings["source_folder"] = source_folder.strip()
    elif "source_folder" in raw_settings:
        settings["source_folder"] = None

    for key in ("retention_days", "retention_minutes"):
        if key in raw_settings:
            settings[key] = _coerce_non_negative_int(raw_settings.get(key), settings[key])

    last_at = raw_settings.get("last_indexing_at")
    if isinstance(last_at, (int, float)) and not isinstance(last_at, bool):
        if not (math.isnan(last_at) or math.isinf(last_at)):
            settings["last_indexing_at"] = float(last_at)

    last_mode = raw_settings.get("last_indexing_mode")
    if last_mode in INDEXING_MODES:
        settings["last_indexing_mode"] = last_mode

    return settings


def load_settings() -> Dict[str, object]:
    ensure_directories()
    if SETTINGS_PATH.exists():
        with SETTINGS_PATH.open("r", encoding="utf-8") as settings_file:
            try:
                raw = json.load(settings_file)
            except json.JSONDecodeError:
                logger.warning("settings_corrupt path=%s - restoring defaults", SETTINGS_PATH)
                raw = DEFAULT_SETTINGS.copy()
    else:
        raw = DEFAULT_SETTINGS.copy()
        save_settings(raw)

    data = _normalize_settings(raw)
    if raw != data:
        save_settings(data)
    return data


def save_settings(settings: Dict[str, object]) -> None:
    ensure_directories()
    normalized = _normalize_settings(settings)

    # Write to temporary file first for atomic update
    temp_path = SETTINGS_PATH.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as settings_file:
            json.dump(normalized, settings_file, indent=2)
            settings_file.flush()
            os.fsync(settings_file.fileno())

        temp_path.replace(SETTINGS_PATH)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def check_source_access(folder: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Check that *folder* exists, is a directory and can be listed."""

    if not folder:
        return False, "Source folder is not configured"
    path = Path(folder)
    try:
        if not path.exists():
            return False, f"Cannot access folder: {folder}. The path does not exist."
        if not path.is_dir():
            return False, f"Cannot access folder: {folder}. The path is not a directory."
    except OSError as error:
        return False, f"Cannot access folder: {folder}. {error}"
    if not os.access(path, os.R_OK | os.X_OK):
        return False, f"Cannot access folder: {folder}. Permission denied."
    return True, None


def update_settings(changes: Dict[str, object]) -> Dict[str, object]:
    """Validate and persist an admin settings update."""

    settings = load_settings()

    if "source_folder" in changes:
        source_folder = changes.get("source_folder")
        if not isinstance(source_folder, str) or not source_folder.strip():
            raise ConfigurationError("Source folder must be a non-empty path")
        accessible, error = check_source_access(source_folder.strip())
        if not accessible:
            raise ConfigurationError(error)
        settings["source_folder"] = source_folder.strip()

    for key, upper in (("retention_days", MAX_RETENTION_DAYS), ("retention_minutes", MAX_RETENTION_MINUTES)):
        if key not in changes:
            continue
        value = changes.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer")
        if value < 0 or value > upper:
            raise ValueError(f"{key} must be between 0 and {upper}")
        settings[key] = value

    save_settings(settings)
    logger.info(
        "settings_updated source_folder=%s retention_days=%s retention_minutes=%s",
        settings["source_folder"],
        settings["retention_days"],
        settings["retention_minutes"],
    )
    return load_settings()


def update_indexing_info(mode: str, finished_at: Optional[float] = None) -> None:
    settings = load_settings()
    settings["last_indexing_at"] = finished_at if finished_at is not None else time.time()
    settings["last_indexing_mode"] = mode
    save_settings(settings)


def retention_window_seconds(settings: Dict[str, object]) -> int:
    return int(settings["retention_days"]) * 86400 + int(settings["retention_minutes"]) * 60


def folder_basename(folder: str) -> str:
    """Return the last segment of a POSIX, Windows or UNC folder path."""

    segments = [segment for segment in folder.replace("\\", "/").split("/") if segment]
    return segments[-1] if segments else "unknown"


def target_directory(settings: Optional[Dict[str, object]] = None) -> Optional[Path]:
    """Return the managed directory for the configured source, if any."""

    settings = settings if settings is not None else load_settings()
    source_folder = settings.get("source_folder")
    if not source_folder:
        return None
    return LOCAL_ROOT / folder_basename(str(source_folder))


@contextmanager
def maintenance_slot(operation: str) -> Iterator[None]:
    """Hold the single indexing/retention slot or raise if it is taken."""

    if not _maintenance_lock.acquire(blocking=False):
        raise OperationInProgressError(operation)
    try:
        yield
    finally:
        _maintenance_lock.release()


def maintenance_running() -> bool:
    return _maintenance_lock.locked()


# Database -----------------------------------------------------------------


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS file_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                filename TEXT NOT NULL,
                source_path TEXT,
                local_path TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_username TEXT,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_file_logs_filename ON file_logs(filename)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_file_logs_action ON file_logs(action)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_file_logs_created_at ON file_logs(created_at)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        conn.commit()


# Audit log ----------------------------------------------------------------


def _row_to_entry(row: sqlite3.Row) -> Dict[str, object]:
    return {
        "id": row["id"],
        "filename": row["filename"],
        "source_path": row["source_path"],
        "local_path": row["local_path"],
        "action": row["action"],
        "actor_username": row["actor_username"],
        "created_at": isoformat_utc(row["created_at"]),
    }


def append_log(
    filename: str,
    local_path: str,
    action: str,
    actor: Optional[str] = None,
    source_path: Optional[str] = None,
) -> int:
    """Persist one lifecycle event and return its id.

    ``actor=None`` records a system action. Raises :class:`LogWriteError` when
    the database cannot be written.
    """
    if action not in FILE_ACTIONS:
        raise ValueError(f"Unknown file action: {action}")

    try:
        with get_db() as conn:
            cursor = conn.execute(
                """
                INSERT INTO file_logs (
                    filename, source_path, local_path, action, actor_username, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (filename, source_path, str(local_path), action, actor, time.time()),
            )
            conn.commit()
            return int(cursor.lastrowid)
    except (sqlite3.Error, OSError) as error:
        raise LogWriteError(f"Failed to write {action} log for {filename}: {error}") from error


def record_file_event(
    filename: str,
    local_path: str,
    action: str,
    actor: Optional[str] = None,
    source_path: Optional[str] = None,
) -> Optional[int]:
    """Append a log entry after a filesystem mutation has already happened.

    A write failure is logged and swallowed; the mutation stands.
    """
    try:
        return append_log(filename, local_path, action, actor=actor, source_path=source_path)
    except LogWriteError as error:
        logger.warning(
            "log_write_failed filename=%s action=%s error=%s", filename, action, error
        )
        return None


def query_logs(
    page: int = 1,
    limit: int = LOG_PAGE_DEFAULT,
    action: Optional[str] = None,
    filename_contains: Optional[str] = None,
) -> Dict[str, object]:
    page = max(int(1 if page is None else page), 1)
    limit = min(max(int(LOG_PAGE_DEFAULT if limit is None else limit), 1), LOG_PAGE_MAX)
    if action is not None and action not in FILE_ACTIONS:
        raise ValueError(f"Unknown file action: {action}")

    clauses: List[str] = []
    params: List[object] = []
    if action:
        clauses.append("action = ?")
        params.append(action)
    if filename_contains:
        # instr() keeps "_" and "%" literal, unlike LIKE.
        clauses.append("instr(LOWER(filename), ?) > 0")
        params.append(filename_contains.lower())

    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    with get_db() as conn:
        row = conn.execute(
            f"SELECT COUNT(*) AS count FROM file_logs{where}", tuple(params)
        ).fetchone()
        total = int(row["count"] if row and row["count"] is not None else 0)
        cursor = conn.execute(
            f"SELECT * FROM file_logs{where} ORDER BY id DESC LIMIT ? OFFSET ?",
            tuple(params) + (limit, (page - 1) * limit),
        )
        entries = [_row_to_entry(entry) for entry in cursor.fetchall()]

    return {
        "entries": entries,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


def log_stats(now: Optional[float] = None) -> Dict[str, object]:
    now = time.time() if now is None else now
    action_counts = {action: 0 for action in FILE_ACTIONS}
    with get_db() as conn:
        total_row = conn.execute("SELECT COUNT(*) AS count FROM file_logs").fetchone()
        for row in conn.execute(
            "SELECT action, COUNT(*) AS count FROM file_logs GROUP BY action"
        ):
            action_counts[row["action"]] = int(row["count"])
        recent_row = conn.execute(
            "SELECT COUNT(*) AS count FROM file_logs WHERE created_at >= ?",
            (now - RECENT_ACTIVITY_SECONDS,),
        ).fetchone()

    return {
        "total_logs": int(total_row["count"] or 0),
        "action_counts": action_counts,
        "recent_activity": int(recent_row["count"] or 0),
    }


def get_log(log_id: int) -> Optional[Dict[str, object]]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM file_logs WHERE id = ?", (log_id,)).fetchone()
    return _row_to_entry(row) if row else None


def recent_logs(limit: int = 10) -> List[Dict[str, object]]:
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM file_logs ORDER BY id DESC LIMIT ?", (max(int(limit), 0),)
        )
        return [_row_to_entry(row) for row in cursor.fetchall()]


def latest_ingest_log(source_path: str) -> Optional[Dict[str, object]]:
    """Return the newest COPIED/MOVED entry ingested from *source_path*, if any."""

    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM file_logs
            WHERE source_path = ? AND action IN (?, ?)
            ORDER BY id DESC
            LIMIT 1
            """,
            (source_path,) + INGEST_ACTIONS,
        ).fetchone()
    return _row_to_entry(row) if row else None


def delete_logs_for_filename(filename: str) -> int:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM file_logs WHERE filename = ?", (filename,))
        conn.commit()
        return cursor.rowcount


# Users --------------------------------------------------------------------


def _row_to_user(row: sqlite3.Row) -> Dict[str, object]:
    return {
        "id": row["id"],
        "username": row["username"],
        "role": row["role"],
        "created_at": isoformat_utc(row["created_at"]),
    }


def validate_username(username: str) -> Tuple[bool, Optional[str]]:
    if not username or _USERNAME_PATTERN.fullmatch(username) is None:
        return (
            False,
            "Username must be 3-50 characters of letters, digits, dots or dashes",
        )
    return True, None


def create_user(username: str, password: str, role: str = Role.USER.value) -> Dict[str, object]:
    valid, error = validate_username(username)
    if not valid:
        raise ValueError(error)
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    role = Role(role).value

    user_id = uuid.uuid4().hex
    created_at = time.time()
    try:
        with get_db() as conn:
            conn.execute(
                """
                INSERT INTO users (id, username, password_hash, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, username, generate_password_hash(password), role, created_at),
            )
            conn.commit()
    except sqlite3.IntegrityError as error:
        raise ValueError(f"Username already exists: {username}") from error

    logger.info("user_created username=%s role=%s", username, role)
    return {
        "id": user_id,
        "username": username,
        "role": role,
        "created_at": isoformat_utc(created_at),
    }


def get_user(username: str) -> Optional[Dict[str, object]]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    return _row_to_user(row) if row else None


def list_users() -> List[Dict[str, object]]:
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM users ORDER BY created_at ASC")
        return [_row_to_user(row) for row in cursor.fetchall()]


def delete_user(username: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM users WHERE username = ?", (username,))
        conn.commit()
        removed = cursor.rowcount > 0
    if removed:
        logger.info("user_deleted username=%s", username)
    return removed


def verify_credentials(username: str, password: str) -> Optional[Dict[str, object]]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    if row is None or not check_password_hash(row["password_hash"], password or ""):
        return None
    return _row_to_user(row)


def ensure_default_admin() -> None:
    """Seed an administrator account when the user table has none."""

    with get_db() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM users WHERE role = ?", (Role.ADMIN.value,)
        ).fetchone()
    if row and row["count"]:
        return

    username = os.environ.get("FILEINTAKE_ADMIN_USERNAME", "admin")
    password = os.environ.get("FILEINTAKE_ADMIN_PASSWORD")
    if not password:
        password = "Admin@123"
        logger.warning(
            "default_admin_password_in_use username=%s - set FILEINTAKE_ADMIN_PASSWORD",
            username,
        )
    create_user(username, password, Role.ADMIN.value)


ensure_directories()
init_db()

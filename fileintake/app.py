import atexit
import logging
import os
import re
import secrets
import shutil
import time
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, has_request_context, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.exceptions import HTTPException

from . import files, indexing, retention, storage
from .errors import FileIntakeError
from .guard import Role, can_access
from .storage import DATA_DIR, LOCAL_ROOT, LOGS_DIR, ensure_directories, env_flag, get_db

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
TOKEN_SALT = "fileintake-access-token"
TOKEN_MAX_AGE_SECONDS = storage.safe_int_env("FILEINTAKE_TOKEN_MAX_AGE_SECONDS", 900, min_value=1)
LOGIN_RATE_LIMIT = os.environ.get("FILEINTAKE_LOGIN_RATE_LIMIT", "10 per minute")
RECENT_ACTIVITY_LIMIT = 10

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            # Exclusive creation so concurrent workers agree on one key.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logging.getLogger("fileintake.config").warning(
                "Secret key file exists but is empty, regenerating"
            )
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as secret_file:
            secret_file.write(generated)
            secret_file.flush()
            os.fsync(secret_file.fileno())
        logging.getLogger("fileintake.config").warning(
            "Generated new secret key - stored in %s", secret_path
        )
        return generated
    except OSError as error:
        logging.getLogger("fileintake.config").critical(
            "SECURITY WARNING: Using in-memory secret key. Tokens will not survive restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

app = Flask(__name__)
app.config["SECRET_KEY"] = _load_secret_key()
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("FILEINTAKE_RATE_LIMIT_STORAGE", "memory://"),
)

_base_lifecycle_logger = logging.getLogger("fileintake.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)

storage.ensure_default_admin()


# Authentication -----------------------------------------------------------


def _token_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_token(user: Dict[str, Any]) -> str:
    return _token_serializer().dumps({"sub": user["username"], "role": user["role"]})


def _extract_token(allow_query_token: bool) -> Optional[str]:
    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    if allow_query_token:
        query_token = request.args.get("token", "").strip()
        return query_token or None
    return None


def _auth_error(message: str, status_code: int) -> Response:
    response = jsonify({"error": message})
    response.status_code = status_code
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


def require_auth(admin: bool = False, allow_query_token: bool = False):
    """Resolve the bearer token into ``g.principal`` before running the view.

    The role is re-read from the user table so deleted users lose access
    immediately.
    """

    def decorator(view: Callable):
        @wraps(view)
        def wrapped(*args, **kwargs):
            token = _extract_token(allow_query_token)
            if not token:
                return _auth_error("Authentication required.", 401)

            try:
                payload = _token_serializer().loads(token, max_age=TOKEN_MAX_AGE_SECONDS)
            except SignatureExpired:
                lifecycle_logger.info("auth_token_expired endpoint=%s", request.endpoint)
                return _auth_error("Token expired.", 401)
            except BadSignature:
                lifecycle_logger.warning("auth_token_invalid endpoint=%s", request.endpoint)
                return _auth_error("Invalid token.", 401)

            user = storage.get_user(str(payload.get("sub", ""))) if isinstance(payload, dict) else None
            if user is None:
                return _auth_error("Invalid token.", 401)

            g.principal = {"username": user["username"], "role": Role(user["role"])}
            if admin and g.principal["role"] is not Role.ADMIN:
                lifecycle_logger.warning(
                    "admin_required endpoint=%s username=%s", request.endpoint, user["username"]
                )
                return _auth_error("Administrator role required.", 403)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _principal():
    return g.principal["role"], g.principal["username"]


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


# Request hooks ------------------------------------------------------------


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    response.headers["Content-Security-Policy"] = "default-src 'none'; img-src 'self'; sandbox"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(FileIntakeError)
def handle_file_intake_error(error: FileIntakeError):
    lifecycle_logger.info(
        "request_rejected error=%s status=%d message=%s",
        type(error).__name__,
        error.status_code,
        sanitize_log_value(str(error)),
    )
    return jsonify({"error": str(error)}), error.status_code


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    return jsonify({"error": "Too many requests. Please try again later."}), 429


@app.errorhandler(HTTPException)
def handle_http_exception(error: HTTPException):
    return jsonify({"error": error.description}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception("request_failed error=%s", sanitize_log_value(str(error)))
    return jsonify({"error": "Internal server error"}), 500


# Routes -------------------------------------------------------------------


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with get_db() as conn:
            conn.execute("SELECT 1").fetchone()
            conn.execute("SELECT COUNT(*) FROM file_logs").fetchone()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        ensure_directories()
        usage = shutil.disk_usage(LOCAL_ROOT)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    if scheduler is not None:
        job = scheduler.get_job("retention_sweep")
        if job and job.next_run_time:
            checks["retention"] = "scheduled"
            checks["retention_next_run"] = job.next_run_time.isoformat()
        else:
            checks["retention"] = "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["retention"] = "disabled"
        checks["scheduler_running"] = False
    checks["maintenance_running"] = storage.maintenance_running()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@app.route("/api/auth/login", methods=["POST"])
@limiter.limit(lambda: LOGIN_RATE_LIMIT)
def login():
    data = _json_body()
    username = str(data.get("username", "")).strip()
    password = str(data.get("password", ""))
    if not username or not password:
        return jsonify({"error": "Username and password are required."}), 400

    user = storage.verify_credentials(username, password)
    if user is None:
        lifecycle_logger.warning("login_failed username=%s", sanitize_log_value(username))
        return jsonify({"error": "Invalid username or password."}), 401

    lifecycle_logger.info("login_succeeded username=%s", user["username"])
    return jsonify(
        {
            "token": issue_token(user),
            "token_type": "Bearer",
            "expires_in": TOKEN_MAX_AGE_SECONDS,
            "user": {"username": user["username"], "role": user["role"]},
        }
    )


@app.route("/api/auth/me")
@require_auth()
def current_user():
    role, username = _principal()
    return jsonify({"username": username, "role": role.value})


@app.route("/api/files")
@require_auth()
def list_managed_files():
    role, username = _principal()
    owner = request.args.get("owner", "").strip() or None
    visible = files.list_files(role, username, owner_filter=owner)
    return jsonify(
        {
            "files": [managed.to_dict() for managed in visible],
            "total": len(visible),
        }
    )


def _send_managed_file(filename: str, disposition: str) -> Response:
    role, username = _principal()
    stream = files.get_file_stream(filename, role, username, disposition=disposition)
    lifecycle_logger.info(
        "file_streamed filename=%s disposition=%s username=%s",
        sanitize_log_value(filename),
        stream.disposition,
        username,
    )
    response = send_file(
        stream.handle,
        mimetype=stream.mime_type,
        as_attachment=stream.disposition == "attachment",
        download_name=stream.download_name,
        max_age=3600,
    )
    response.headers["Cache-Control"] = "private, max-age=3600"
    response.content_length = stream.size
    return response


@app.route("/api/files/<filename>/stream")
@require_auth(allow_query_token=True)
def stream_file(filename: str):
    return _send_managed_file(filename, "inline")


@app.route("/api/files/<filename>/download")
@require_auth(allow_query_token=True)
def download_file(filename: str):
    return _send_managed_file(filename, "attachment")


@app.route("/api/files/<filename>", methods=["DELETE"])
@require_auth()
def delete_managed_file(filename: str):
    role, username = _principal()
    files.delete_file(filename, role, username, actor=username)
    return jsonify({"message": "File deleted successfully", "filename": filename})


@app.route("/api/files", methods=["DELETE"])
@require_auth()
def delete_all_managed_files():
    role, username = _principal()
    outcome = files.delete_all_files(role, username, actor=username)
    return jsonify(
        {
            "message": f"Deleted {outcome['deleted_count']} file(s)",
            "deleted_count": outcome["deleted_count"],
            "errors": outcome["errors"],
        }
    )


@app.route("/api/indexing/run", methods=["POST"])
@require_auth(admin=True)
def run_indexing():
    mode = _json_body().get("mode", "COPY")
    _, username = _principal()
    try:
        result = indexing.run_indexing(str(mode), actor=username)
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    return jsonify(result.to_dict())


@app.route("/api/retention/sweep", methods=["POST"])
@require_auth(admin=True)
def run_retention_sweep():
    _, username = _principal()
    lifecycle_logger.info("retention_sweep_requested username=%s", username)
    return jsonify(retention.sweep().to_dict())


@app.route("/api/retention/stats")
@require_auth(admin=True)
def retention_statistics():
    stats = retention.retention_stats()
    if scheduler is not None:
        job = scheduler.get_job("retention_sweep")
        if job and job.next_run_time:
            stats["next_sweep_at"] = job.next_run_time.isoformat()
    return jsonify(stats)


def _settings_payload(settings: Dict[str, Any]) -> Dict[str, Any]:
    target_dir = storage.target_directory(settings)
    payload = {
        "source_folder": settings["source_folder"],
        "retention_days": settings["retention_days"],
        "retention_minutes": settings["retention_minutes"],
        "last_indexing_at": storage.isoformat_utc(settings["last_indexing_at"]),
        "last_indexing_mode": settings["last_indexing_mode"],
        "target_dir": str(target_dir) if target_dir is not None else None,
    }
    if storage.retention_window_seconds(settings) == 0:
        payload["warning"] = "Retention window is zero: every managed file is deleted on the next sweep."
    return payload


@app.route("/api/settings", methods=["GET", "PUT"])
@require_auth(admin=True)
def settings():
    if request.method == "GET":
        return jsonify(_settings_payload(storage.load_settings()))

    changes = _json_body()
    allowed = {"source_folder", "retention_days", "retention_minutes"}
    unknown = sorted(set(changes) - allowed)
    if unknown:
        return jsonify({"error": f"Unknown settings: {', '.join(unknown)}"}), 400
    try:
        updated = storage.update_settings(changes)
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    _, username = _principal()
    lifecycle_logger.info("settings_saved username=%s keys=%s", username, sorted(changes))
    return jsonify(_settings_payload(updated))


@app.route("/api/settings/test-source", methods=["POST"])
@require_auth(admin=True)
def test_source():
    folder = _json_body().get("source_folder")
    folder = folder.strip() if isinstance(folder, str) else None
    return jsonify(indexing.test_source_access(folder or None))


@app.route("/api/logs")
@require_auth(admin=True)
def logs():
    action = request.args.get("action", "").strip().upper() or None
    filename = request.args.get("filename", "").strip() or None
    try:
        result = storage.query_logs(
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", storage.LOG_PAGE_DEFAULT, type=int),
            action=action,
            filename_contains=filename,
        )
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    return jsonify(result)


@app.route("/api/logs/stats")
@require_auth(admin=True)
def logs_statistics():
    return jsonify(storage.log_stats())


@app.route("/api/logs/<int:log_id>")
@require_auth(admin=True)
def log_entry(log_id: int):
    entry = storage.get_log(log_id)
    if entry is None:
        return jsonify({"error": "Log entry not found"}), 404
    return jsonify(entry)


@app.route("/api/dashboard")
@require_auth()
def dashboard():
    role, username = _principal()
    settings_data = storage.load_settings()
    summary = files.usage_summary(role, username)

    activity = [
        entry
        for entry in storage.recent_logs(limit=RECENT_ACTIVITY_LIMIT * 5)
        if can_access(role, username, entry["filename"])
    ][:RECENT_ACTIVITY_LIMIT]

    payload: Dict[str, Any] = {
        "total_files": summary["total_files"],
        "total_size": summary["total_size"],
        "recent_activity": activity,
        "retention_days": settings_data["retention_days"],
        "retention_minutes": settings_data["retention_minutes"],
        "last_indexing_at": storage.isoformat_utc(settings_data["last_indexing_at"]),
    }
    if role is Role.ADMIN:
        payload["source_folder"] = settings_data["source_folder"]
        payload["last_indexing_mode"] = settings_data["last_indexing_mode"]
    return jsonify(payload)


@app.route("/api/users", methods=["GET", "POST"])
@require_auth(admin=True)
def users():
    if request.method == "GET":
        return jsonify({"users": storage.list_users()})

    data = _json_body()
    try:
        user = storage.create_user(
            str(data.get("username", "")).strip(),
            str(data.get("password", "")),
            str(data.get("role", Role.USER.value)).upper(),
        )
    except ValueError as error:
        return jsonify({"error": str(error)}), 400
    return jsonify(user), 201


@app.route("/api/users/<username>", methods=["DELETE"])
@require_auth(admin=True)
def delete_user(username: str):
    _, current = _principal()
    if username == current:
        return jsonify({"error": "You cannot delete your own account"}), 400
    if not storage.delete_user(username):
        return jsonify({"error": "User not found"}), 404
    lifecycle_logger.info("user_removed username=%s by=%s", sanitize_log_value(username), current)
    return jsonify({"message": "User deleted successfully", "username": username})


# Scheduler ----------------------------------------------------------------

scheduler: Optional[BackgroundScheduler] = None


def start_scheduler() -> BackgroundScheduler:
    """Schedule the retention sweep so requests are never blocked by it."""

    global scheduler
    if scheduler is not None:
        return scheduler

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=retention.run_scheduled_sweep,
        trigger="interval",
        minutes=retention.SWEEP_INTERVAL_MINUTES,
        id="retention_sweep",
        name="Retention sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))
    logging.getLogger("fileintake.scheduler").info(
        "scheduler_started interval_minutes=%d", retention.SWEEP_INTERVAL_MINUTES
    )
    return scheduler


if env_flag("FILEINTAKE_SCHEDULER_ENABLED", True):
    start_scheduler()
    # Enforce retention once before serving traffic.
    retention.run_scheduled_sweep()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)

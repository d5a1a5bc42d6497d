"""Exception types raised by the intake, retention and file services."""


class FileIntakeError(Exception):
    """Base class for errors surfaced to the HTTP layer."""

    status_code = 500


class ConfigurationError(FileIntakeError):
    """Raised when the source folder is unset or cannot be read."""

    status_code = 400


class PathTraversalError(FileIntakeError):
    """Raised when a candidate path resolves outside the managed root."""

    status_code = 400

    def __init__(self, candidate: str, root: str) -> None:
        super().__init__(f"Path traversal detected: {candidate} would escape {root}")
        self.candidate = candidate
        self.root = root


class InvalidFilenameError(FileIntakeError):
    status_code = 400

    def __init__(self, filename: str) -> None:
        super().__init__("Invalid filename")
        self.filename = filename


class NotFoundError(FileIntakeError):
    status_code = 404

    def __init__(self, filename: str) -> None:
        super().__init__("File not found")
        self.filename = filename


class AccessDeniedError(FileIntakeError):
    """Raised when a non-admin caller does not own the requested file."""

    status_code = 403

    def __init__(self, filename: str, username: str) -> None:
        super().__init__("You can only access your own files")
        self.filename = filename
        self.username = username


class OperationInProgressError(FileIntakeError):
    """Raised when indexing or a retention sweep already holds the maintenance slot."""

    status_code = 409

    def __init__(self, operation: str) -> None:
        super().__init__(f"Cannot start {operation}: indexing or retention is already in progress")
        self.operation = operation


class LogWriteError(FileIntakeError):
    """Raised when an audit log entry cannot be persisted."""

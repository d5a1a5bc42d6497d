import importlib
import logging
import os
import sys
import tempfile
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest import mock

PACKAGE_MODULES = [
    "fileintake.app",
    "fileintake.files",
    "fileintake.retention",
    "fileintake.indexing",
    "fileintake.storage",
    "fileintake.guard",
    "fileintake.errors",
    "fileintake",
]

ADMIN_PASSWORD = "AdminPass123"


def _drop_package_modules() -> None:
    for module in PACKAGE_MODULES:
        sys.modules.pop(module, None)


class IsolatedStorageTestCase(unittest.TestCase):
    """Point every fileintake directory at a temp dir and re-import the package."""

    load_app = False
    extra_env: dict = {}

    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name).resolve()
        self.source_dir = self.root / "incoming"
        self.source_dir.mkdir()

        env = {
            "FILEINTAKE_STORAGE_ROOT": str(self.root),
            "FILEINTAKE_DATA_DIR": str(self.root / "data"),
            "FILEINTAKE_LOCAL_ROOT": str(self.root / "storage" / "local"),
            "FILEINTAKE_LOGS_DIR": str(self.root / "logs"),
            "FILEINTAKE_SCHEDULER_ENABLED": "0",
            "FILEINTAKE_ADMIN_PASSWORD": ADMIN_PASSWORD,
            "SECRET_KEY": "test-secret-key",
        }
        env.update(self.extra_env)
        patcher = mock.patch.dict(os.environ, env)
        patcher.start()
        self.addCleanup(patcher.stop)
        for key in ("FILEINTAKE_DEFAULT_SOURCE", "FILEINTAKE_RETENTION_DAYS", "FILEINTAKE_RETENTION_MINUTES"):
            os.environ.pop(key, None)

        _drop_package_modules()
        self.errors = importlib.import_module("fileintake.errors")
        self.guard = importlib.import_module("fileintake.guard")
        self.storage = importlib.import_module("fileintake.storage")
        self.indexing = importlib.import_module("fileintake.indexing")
        self.retention = importlib.import_module("fileintake.retention")
        self.files = importlib.import_module("fileintake.files")
        if self.load_app:
            self.app_module = importlib.import_module("fileintake.app")
            self.app = self.app_module.app
            self.app.config.update(TESTING=True)
            self.client = self.app.test_client()

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.startswith(str(self.root)):
                root_logger.removeHandler(handler)
                handler.close()
        _drop_package_modules()
        self.storage_dir.cleanup()

    # Helpers ---------------------------------------------------------------

    @property
    def managed_dir(self) -> Path:
        return self.root / "storage" / "local" / self.source_dir.name

    def configure_source(self, **changes):
        changes.setdefault("source_folder", str(self.source_dir))
        return self.storage.update_settings(changes)

    def write_source(self, name: str, content: bytes = b"data") -> Path:
        path = self.source_dir / name
        path.write_bytes(content)
        return path

    def write_managed(self, name: str, content: bytes = b"data", mtime=None) -> Path:
        self.managed_dir.mkdir(parents=True, exist_ok=True)
        path = self.managed_dir / name
        path.write_bytes(content)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

import contextlib
import io
import json
import time
import unittest
from pathlib import Path
from unittest import mock

from support import IsolatedStorageTestCase

DAY = 86400


class RetentionSweepTests(IsolatedStorageTestCase):
    def setUp(self):
        super().setUp()
        self.now = 1_700_000_000.0

    def test_boundary_between_expired_and_retained(self):
        self.configure_source(retention_days=1, retention_minutes=0)
        self.write_managed("expired.txt", b"12345", mtime=self.now - DAY - 1)
        self.write_managed("fresh.txt", mtime=self.now - DAY + 1)
        self.write_managed("edge.txt", mtime=self.now - DAY)

        result = self.retention.sweep(now=self.now)

        self.assertEqual(result.total_scanned, 3)
        self.assertEqual(result.total_deleted, 1)
        self.assertEqual(result.freed_bytes, 5)
        self.assertEqual(result.errors, [])
        self.assertFalse((self.managed_dir / "expired.txt").exists())
        self.assertTrue((self.managed_dir / "fresh.txt").exists())
        self.assertTrue((self.managed_dir / "edge.txt").exists())

        logs = self.storage.query_logs(action="DELETED_RETENTION")
        self.assertEqual(logs["total"], 1)
        self.assertEqual(logs["entries"][0]["filename"], "expired.txt")
        self.assertIsNone(logs["entries"][0]["actor_username"])

    def test_minutes_extend_the_window(self):
        self.configure_source(retention_days=0, retention_minutes=30)
        self.write_managed("recent.txt", mtime=self.now - 29 * 60)
        self.write_managed("stale.txt", mtime=self.now - 31 * 60)

        result = self.retention.sweep(now=self.now)

        self.assertEqual(result.total_deleted, 1)
        self.assertTrue((self.managed_dir / "recent.txt").exists())

    def test_zero_window_deletes_everything_older_than_now_and_warns(self):
        self.configure_source(retention_days=0, retention_minutes=0)
        self.write_managed("a.txt", mtime=self.now - 1)
        self.write_managed("b.txt", mtime=self.now - 1)

        with self.assertLogs("fileintake.retention", level="WARNING") as captured:
            result = self.retention.sweep(now=self.now)

        self.assertEqual(result.total_deleted, 2)
        self.assertTrue(any("retention_window_zero" in line for line in captured.output))

    def test_missing_managed_directory_is_a_no_op(self):
        self.configure_source()
        result = self.retention.sweep(now=self.now)
        self.assertEqual(result.to_dict()["total_scanned"], 0)
        self.assertEqual(result.total_deleted, 0)

    def test_no_source_configured_is_a_no_op(self):
        result = self.retention.sweep(now=self.now)
        self.assertEqual(result.total_scanned, 0)

    def test_file_removed_during_sweep_counts_as_gone(self):
        self.configure_source(retention_days=1)
        self.write_managed("vanishing.txt", mtime=self.now - 2 * DAY)

        with mock.patch.object(self.retention, "_managed_files", return_value=["vanishing.txt", "ghost.txt"]):
            result = self.retention.sweep(now=self.now)

        self.assertEqual(result.total_deleted, 1)
        self.assertEqual(result.errors, [])
        self.assertEqual(self.storage.query_logs()["total"], 1)

    def test_empty_subdirectories_are_pruned(self):
        self.configure_source(retention_days=1)
        self.write_managed("old.txt", mtime=self.now - 2 * DAY)
        (self.managed_dir / "empty" / "deeper").mkdir(parents=True)
        (self.managed_dir / "kept").mkdir()
        (self.managed_dir / "kept" / "inner.txt").write_text("x")

        result = self.retention.sweep(now=self.now)

        self.assertEqual(result.deleted_directories, 2)
        self.assertFalse((self.managed_dir / "empty").exists())
        self.assertTrue((self.managed_dir / "kept" / "inner.txt").exists())
        self.assertTrue(self.managed_dir.is_dir())

    def test_sweep_refused_while_indexing(self):
        self.configure_source()
        with self.storage.maintenance_slot("indexing"):
            with self.assertRaises(self.errors.OperationInProgressError):
                self.retention.sweep(now=self.now)

    def test_scheduled_sweep_skips_busy_tick(self):
        self.configure_source(retention_days=0)
        self.write_managed("a.txt", mtime=time.time() - 60)

        with self.storage.maintenance_slot("indexing"):
            with self.assertLogs("fileintake.retention", level="INFO") as captured:
                self.assertIsNone(self.retention.run_scheduled_sweep())

        self.assertTrue(any("retention_sweep_skipped" in line for line in captured.output))
        self.assertTrue((self.managed_dir / "a.txt").exists())

    def test_scheduled_sweep_runs_when_idle(self):
        self.configure_source(retention_days=0)
        self.write_managed("a.txt", mtime=time.time() - 60)

        result = self.retention.run_scheduled_sweep()

        self.assertEqual(result.total_deleted, 1)
        self.assertFalse(self.storage.maintenance_running())

    def test_retention_stats_estimates_next_sweep(self):
        self.configure_source(retention_days=1)
        self.write_managed("expired.txt", b"abc", mtime=self.now - 2 * DAY)
        self.write_managed("fresh.txt", mtime=self.now)

        stats = self.retention.retention_stats(now=self.now)

        self.assertEqual(stats["retention_seconds"], DAY)
        self.assertEqual(stats["estimated_files_to_delete"], 1)
        self.assertEqual(stats["estimated_bytes_to_free"], 3)
        self.assertTrue(stats["next_sweep_at"].endswith("Z"))
        self.assertFalse(stats["sweep_running"])

    def test_next_sweep_is_on_interval_boundary(self):
        interval = self.retention.SWEEP_INTERVAL_MINUTES * 60
        boundary = self.retention.next_sweep_at(self.now)
        self.assertEqual(boundary % interval, 0)
        self.assertGreater(boundary, self.now)
        self.assertLessEqual(boundary - self.now, interval)

    def test_retention_stats_tolerate_unreadable_directory(self):
        self.configure_source(retention_days=1)
        self.write_managed("expired.txt", b"abc", mtime=self.now - 2 * DAY)

        with mock.patch.object(
            self.retention, "_managed_files", side_effect=PermissionError("Permission denied")
        ):
            with self.assertLogs("fileintake.retention", level="WARNING"):
                stats = self.retention.retention_stats(now=self.now)

        self.assertEqual(stats["estimated_files_to_delete"], 0)
        self.assertEqual(stats["retention_seconds"], DAY)

    def test_retention_stats_skip_unreadable_files(self):
        self.configure_source(retention_days=1)
        self.write_managed("expired.txt", b"abc", mtime=self.now - 2 * DAY)
        self.write_managed("locked.txt", b"secret", mtime=self.now - 2 * DAY)
        real_stat = Path.stat

        def guarded_stat(path, *args, **kwargs):
            if path.name == "locked.txt":
                raise PermissionError("Permission denied")
            return real_stat(path, *args, **kwargs)

        with mock.patch.object(Path, "stat", autospec=True, side_effect=guarded_stat):
            stats = self.retention.retention_stats(now=self.now)

        self.assertEqual(stats["estimated_files_to_delete"], 1)
        self.assertEqual(stats["estimated_bytes_to_free"], 3)

    def test_command_line_sweep_prints_result(self):
        self.configure_source(retention_days=0)
        self.write_managed("a.txt", b"12345", mtime=time.time() - 60)
        output = io.StringIO()

        with contextlib.redirect_stdout(output):
            exit_code = self.retention.main()

        self.assertEqual(exit_code, 0)
        self.assertEqual(json.loads(output.getvalue())["total_deleted"], 1)
        self.assertFalse((self.managed_dir / "a.txt").exists())
        logs = self.storage.query_logs(action="DELETED_RETENTION")
        self.assertEqual(logs["total"], 1)

    def test_command_line_sweep_fails_when_busy(self):
        self.configure_source(retention_days=0)
        output = io.StringIO()

        with self.storage.maintenance_slot("indexing"), contextlib.redirect_stdout(output):
            exit_code = self.retention.main()

        self.assertEqual(exit_code, 1)
        self.assertIn("did not run", output.getvalue())


class PruneDisabledTests(IsolatedStorageTestCase):
    extra_env = {"FILEINTAKE_PRUNE_EMPTY_DIRS": "false"}

    def test_empty_directories_are_kept(self):
        self.configure_source(retention_days=1)
        self.write_managed("a.txt")
        (self.managed_dir / "empty").mkdir()

        result = self.retention.sweep()

        self.assertEqual(result.deleted_directories, 0)
        self.assertTrue((self.managed_dir / "empty").is_dir())


if __name__ == "__main__":
    unittest.main()

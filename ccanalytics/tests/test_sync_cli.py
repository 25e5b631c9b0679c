import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from ccanalytics.scripts import sync_cli


class SyncCliTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.sessions = self.root / "projects"
        self.db_path = self.root / "store.db"
        self._log("demo", "abc123", [
            {"role": "user", "content": "hi", "timestamp": "2026-02-16T10:00:00Z", "tokens": {"input": 100, "output": 0}},
            {"role": "assistant", "content": "hello", "timestamp": "2026-02-16T10:00:30Z", "tokens": {"input": 50, "output": 75}},
        ])

    def _log(self, project: str, name: str, lines: list) -> Path:
        path = self.sessions / project / f"{name}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(l if isinstance(l, str) else json.dumps(l) for l in lines), encoding="utf-8")
        return path

    def _main(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = sync_cli.main(
                ["--sessions-dir", str(self.sessions), "--db-backend", "sqlite", "--db-path", str(self.db_path), *argv]
            )
        return code, out.getvalue()

    def test_sync_then_status(self) -> None:
        code, output = self._main("sync")
        self.assertEqual(code, 0)
        self.assertIn("sessions_inserted=1", output)

        code, output = self._main("--json", "status")
        self.assertEqual(code, 0)
        status = json.loads(output)
        self.assertEqual(status["checkpoint"]["sync_status"], "completed")
        self.assertEqual(status["database"]["totalSessions"], 1)

    def test_dry_run_json_writes_nothing(self) -> None:
        code, output = self._main("--json", "sync", "--dry-run")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["summary"]["sessions_inserted"], 1)

        _, output = self._main("--json", "status")
        self.assertIsNone(json.loads(output)["checkpoint"])

    def test_parse_errors_exit_nonzero(self) -> None:
        self._log("demo", "broken", ["{", "nope"])
        code, output = self._main("sync")
        self.assertEqual(code, 1)
        self.assertIn("MALFORMED_JSON", output)

    def test_preview_and_reset(self) -> None:
        self._main("sync")

        code, output = self._main("preview")
        self.assertEqual(code, 0)
        self.assertIn("estimated_sessions=0", output)

        code, output = self._main("reset")
        self.assertEqual(code, 0)
        _, output = self._main("preview")
        self.assertIn("last_sync=never", output)
        self.assertIn("estimated_sessions=1", output)

    def test_explicit_files(self) -> None:
        other = self._log("demo", "def456", [{"role": "user", "content": "x", "timestamp": "2026-02-17T10:00:00Z"}])
        code, output = self._main("--json", "sync", "--files", str(other))
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["details"]["session_ids"], ["session_def456"])

    def test_cleanup_dry_run_and_stats(self) -> None:
        self._main("sync")

        code, output = self._main("cleanup", "--dry-run", "--retention-days", "30")
        self.assertEqual(code, 0)
        self.assertIn("sessions: would delete", output)

        code, output = self._main("--json", "retention-stats")
        self.assertEqual(code, 0)
        payload = json.loads(output)
        self.assertIn("stats", payload)
        self.assertIn("policy", payload)

    def test_max_files_must_be_positive(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                sync_cli.main(["sync", "--max-files", "0"])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()

import unittest

from ccanalytics.services.sync_progress import SyncProgressTracker


class SyncProgressTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def test_percent_and_eta(self) -> None:
        tracker = SyncProgressTracker()
        updates = []
        tracker.subscribe(updates.append)

        await tracker.start(4)
        self.assertTrue(tracker.is_running)
        self.assertIsNone(updates[-1].estimated_time_remaining_ms)

        await tracker.file_started("/logs/a.jsonl")
        self.assertEqual(updates[-1].current_file, "/logs/a.jsonl")
        await tracker.file_finished(sessions=1, messages=3)

        state = tracker.current
        self.assertEqual(state.processed_files, 1)
        self.assertEqual(state.progress_percent, 25)
        self.assertIsNotNone(state.estimated_time_remaining_ms)
        self.assertEqual(state.messages_processed, 3)

        await tracker.finish(success=True)
        self.assertFalse(tracker.is_running)
        self.assertEqual(updates[-1].status, "completed")
        self.assertEqual(updates[-1].progress_percent, 100)
        self.assertEqual(updates[-1].estimated_time_remaining_ms, 0)

    async def test_failed_run_keeps_partial_percent(self) -> None:
        tracker = SyncProgressTracker()
        await tracker.start(2)
        await tracker.file_finished(errors=2)
        await tracker.finish(success=False)

        state = tracker.current
        self.assertEqual(state.status, "failed")
        self.assertEqual(state.progress_percent, 50)
        self.assertEqual(state.errors, 2)

    async def test_empty_run_is_complete(self) -> None:
        tracker = SyncProgressTracker()
        await tracker.start(0)
        await tracker.finish(success=True)
        self.assertEqual(tracker.current.progress_percent, 100)

    async def test_async_listener_and_unsubscribe(self) -> None:
        tracker = SyncProgressTracker()
        seen = []

        async def _listener(update) -> None:
            seen.append(update.status)

        unsubscribe = tracker.subscribe(_listener)
        await tracker.start(1)
        unsubscribe()
        await tracker.finish(success=True)

        self.assertEqual(seen, ["in_progress"])

    async def test_failing_listener_does_not_stop_others(self) -> None:
        tracker = SyncProgressTracker()
        seen = []

        def _broken(update) -> None:
            raise RuntimeError("socket closed")

        tracker.subscribe(_broken)
        tracker.subscribe(seen.append)

        with self.assertLogs("ccanalytics.sync", level="ERROR"):
            await tracker.start(1)

        self.assertEqual(len(seen), 1)

    async def test_snapshots_are_independent(self) -> None:
        tracker = SyncProgressTracker()
        updates = []
        tracker.subscribe(updates.append)

        await tracker.start(2)
        await tracker.file_finished()

        self.assertEqual(updates[0].processed_files, 0)
        self.assertEqual(updates[1].processed_files, 1)
        self.assertEqual(tracker.current.model_dump(by_alias=True)["processedFiles"], 1)


if __name__ == "__main__":
    unittest.main()

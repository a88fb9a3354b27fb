import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from src.application.ledger import SyncHistoryLedger
from src.domain.models import SyncRecord, SyncStatus, SyncType

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(status: SyncStatus, age: timedelta, sync_type: SyncType = SyncType.FULL) -> SyncRecord:
    return SyncRecord(
        id=1,
        owner="octocat",
        repo="hello",
        status=status,
        sync_type=sync_type,
        issues_synced=3,
        error_message="boom" if status is SyncStatus.FAILED else None,
        last_sync_at=NOW - age,
    )


class TestSyncHistoryLedger(unittest.IsolatedAsyncioTestCase):
    def _ledger(self, latest=None) -> SyncHistoryLedger:
        repository = MagicMock()
        repository.latest_sync_record = AsyncMock(return_value=latest)
        repository.insert_sync_record = AsyncMock(side_effect=lambda record, retention: record)
        return SyncHistoryLedger(repository, retention=20, freshness_hours=24, now=lambda: NOW)

    async def test_needs_sync_without_history(self) -> None:
        self.assertTrue(await self._ledger(None).needs_sync("octocat", "hello"))

    async def test_needs_sync_after_failure(self) -> None:
        ledger = self._ledger(_record(SyncStatus.FAILED, timedelta(minutes=1)))
        self.assertTrue(await ledger.needs_sync("octocat", "hello"))

    async def test_recent_success_is_fresh(self) -> None:
        ledger = self._ledger(_record(SyncStatus.SUCCESS, timedelta(hours=23)))
        self.assertFalse(await ledger.needs_sync("octocat", "hello"))

    async def test_old_success_is_stale(self) -> None:
        ledger = self._ledger(_record(SyncStatus.SUCCESS, timedelta(hours=25)))
        self.assertTrue(await ledger.needs_sync("octocat", "hello"))

    async def test_record_defaults_timestamp_and_passes_retention(self) -> None:
        ledger = self._ledger()

        stored = await ledger.record("octocat", "hello", SyncStatus.SUCCESS, SyncType.WEBHOOK, issues_synced=1)

        self.assertEqual(stored.last_sync_at, NOW)
        ledger.repository.insert_sync_record.assert_awaited_once()
        self.assertEqual(ledger.repository.insert_sync_record.await_args.kwargs["retention"], 20)

    async def test_latest_success_filters_by_status(self) -> None:
        ledger = self._ledger()

        await ledger.latest_success("octocat", "hello", sync_types=[SyncType.FULL])

        ledger.repository.latest_sync_record.assert_awaited_once_with(
            "octocat", "hello", status=SyncStatus.SUCCESS, sync_types=[SyncType.FULL]
        )

    async def test_status_reports_latest_record(self) -> None:
        ledger = self._ledger(_record(SyncStatus.FAILED, timedelta(hours=1), SyncType.INCREMENTAL))

        status = await ledger.status("octocat", "hello")

        self.assertTrue(status["needs_sync"])
        self.assertEqual(status["status"], "failed")
        self.assertEqual(status["sync_type"], "incremental")
        self.assertEqual(status["error_message"], "boom")
        self.assertEqual(status["last_sync_at"], (NOW - timedelta(hours=1)).isoformat())

    async def test_status_without_history(self) -> None:
        status = await self._ledger(None).status("octocat", "hello")
        self.assertEqual(status, {"needs_sync": True, "last_sync_at": None, "status": None, "issues_synced": 0})

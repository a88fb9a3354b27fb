import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.domain.models import SyncRecord, SyncStatus, SyncType
from src.infrastructure.database import MirrorRepository

logger = logging.getLogger(__name__)

RETENTION_LIMIT = 20
FRESHNESS_HOURS = 24.0


class SyncHistoryLedger:
    """
    Append-only audit trail of sync attempts, capped at `retention` rows per repository.

    It answers two questions: "when did we last sync successfully?" for the orchestrator,
    and "does this repository need a sync?" for passive refresh logic.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        retention: int = RETENTION_LIMIT,
        freshness_hours: float = FRESHNESS_HOURS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.retention = retention
        self.freshness = timedelta(hours=freshness_hours)
        self._now = now

    async def append(self, record: SyncRecord) -> SyncRecord:
        stored = await self.repository.insert_sync_record(record, retention=self.retention)
        logger.info(
            f"Recorded {record.status.value} {record.sync_type.value} sync for "
            f"{record.owner}/{record.repo} ({record.issues_synced} issues)."
        )
        return stored

    async def record(
        self,
        owner: str,
        repo: str,
        status: SyncStatus,
        sync_type: SyncType,
        issues_synced: int = 0,
        error_message: Optional[str] = None,
        last_sync_at: Optional[datetime] = None,
    ) -> SyncRecord:
        return await self.append(SyncRecord(
            owner=owner,
            repo=repo,
            status=status,
            sync_type=sync_type,
            issues_synced=issues_synced,
            error_message=error_message,
            last_sync_at=last_sync_at or self._now(),
        ))

    async def latest(self, owner: str, repo: str) -> Optional[SyncRecord]:
        return await self.repository.latest_sync_record(owner, repo)

    async def latest_success(
        self, owner: str, repo: str, sync_types: Optional[Sequence[SyncType]] = None
    ) -> Optional[SyncRecord]:
        return await self.repository.latest_sync_record(
            owner, repo, status=SyncStatus.SUCCESS, sync_types=sync_types
        )

    async def history(self, owner: str, repo: str, limit: int = RETENTION_LIMIT) -> List[SyncRecord]:
        return await self.repository.list_sync_records(owner, repo, limit=limit)

    def _is_stale(self, record: Optional[SyncRecord]) -> bool:
        if record is None or record.status is SyncStatus.FAILED:
            return True
        return self._now() - record.last_sync_at > self.freshness

    async def needs_sync(self, owner: str, repo: str) -> bool:
        return self._is_stale(await self.latest(owner, repo))

    async def status(self, owner: str, repo: str) -> Dict[str, Any]:
        latest = await self.latest(owner, repo)
        if latest is None:
            return {"needs_sync": True, "last_sync_at": None, "status": None, "issues_synced": 0}
        return {
            "needs_sync": self._is_stale(latest),
            "last_sync_at": latest.last_sync_at.isoformat(),
            "status": latest.status.value,
            "sync_type": latest.sync_type.value,
            "issues_synced": latest.issues_synced,
            "error_message": latest.error_message,
        }

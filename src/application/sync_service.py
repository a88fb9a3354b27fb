import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from src.application.config_resolver import ConfigResolver
from src.application.ledger import SyncHistoryLedger
from src.domain.cache_keys import LABELS, CacheKey
from src.domain.exceptions import CooldownError, MirrorException, StoreError, SyncError
from src.domain.models import IssueEntity, SyncResult, SyncStatus, SyncType, merge_issues, repo_key
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.cache import CacheTierManager
from src.infrastructure.database import MirrorRepository, utcnow
from src.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

COOLDOWN_SECONDS = 60.0
# Only polled syncs move the incremental lower bound; a webhook touches a single entity.
POLL_SYNC_TYPES = (SyncType.FULL, SyncType.INCREMENTAL)

ClientFactory = Callable[[str], GitHubRestClient]


class SyncOrchestrator:
    """
    Service responsible for synchronizing one repository's labels and issues from GitHub
    into the durable store, and for keeping the sync ledger and caches consistent with it.

    A forced sync, or one with no previous successful poll, is a full sync. Otherwise only
    issues updated since the last successful poll are fetched. Every attempt that gets past
    the cooldown check leaves exactly one record in the ledger.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        ledger: SyncHistoryLedger,
        cache: CacheTierManager,
        config_resolver: ConfigResolver,
        client_factory: ClientFactory = GitHubRestClient,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
    ):
        self.repository = repository
        self.ledger = ledger
        self.cache = cache
        self.config_resolver = config_resolver
        self.client_factory = client_factory
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._now = now
        self._session_factory = session_factory
        self._last_attempts: Dict[str, float] = {}
        self._loaded: Dict[str, Dict[int, IssueEntity]] = {}

    def _claim_attempt(self, owner: str, repo: str) -> None:
        """Checks and stamps the cooldown window. Must stay free of awaits."""
        key = repo_key(owner, repo)
        now = self._clock()
        last_attempt = self._last_attempts.get(key)
        if last_attempt is not None and now - last_attempt < self.cooldown_seconds:
            remaining = self.cooldown_seconds - (now - last_attempt)
            logger.info(f"Sync for {owner}/{repo} rejected, cooling down for {remaining:.0f}s.")
            raise CooldownError(owner, repo, remaining)
        self._last_attempts[key] = now

    def loaded_issues(self, owner: str, repo: str) -> List[IssueEntity]:
        """Issues held in memory from previous syncs of this process, newest number first."""
        loaded = self._loaded.get(repo_key(owner, repo), {})
        return sorted(loaded.values(), key=lambda issue: issue.number, reverse=True)

    def loaded_issue(self, owner: str, repo: str, number: int) -> Optional[IssueEntity]:
        return self._loaded.get(repo_key(owner, repo), {}).get(number)

    async def sync(self, owner: str, repo: str, force: bool = False) -> SyncResult:
        self._claim_attempt(owner, repo)
        started_at = self._now()
        sync_type = SyncType.FULL

        try:
            config = await self.config_resolver.resolve(owner, repo)
            token = self.config_resolver.credential_for(config)

            since: Optional[datetime] = None
            if not force:
                previous = await self.ledger.latest_success(owner, repo, sync_types=POLL_SYNC_TYPES)
                if previous is not None:
                    sync_type = SyncType.INCREMENTAL
                    since = previous.last_sync_at

            logger.info(
                f"Starting {sync_type.value} sync of {owner}/{repo}"
                + (f" (changes since {since.isoformat()})." if since else ".")
            )
            return await self._execute(owner, repo, token, sync_type, since, started_at)

        except MirrorException as e:
            await self._record_failure(owner, repo, sync_type, e, started_at)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while syncing {owner}/{repo}: {e}")
            await self._record_failure(owner, repo, sync_type, e, started_at)
            raise SyncError(f"Unexpected error while syncing {owner}/{repo}: {e}") from e

    async def _execute(
        self,
        owner: str,
        repo: str,
        token: str,
        sync_type: SyncType,
        since: Optional[datetime],
        started_at: datetime,
    ) -> SyncResult:
        client = self.client_factory(token)

        async with self._session_factory() as session:
            # Labels first: they are cheap and issues reference them by name.
            raw_labels = await client.list_all_labels(session, owner, repo)
            labels_synced, labels_failed = await self._save_labels(owner, repo, raw_labels)

            raw_issues = await client.list_all_issues(session, owner, repo, since=since)

        issues = [GitHubTranslator.to_issue(raw_issue) for raw_issue in raw_issues if raw_issue]

        if sync_type is SyncType.INCREMENTAL and not issues:
            logger.info(f"No updates found for {owner}/{repo} since last sync.")
            if labels_synced:
                self.cache.invalidate_prefix(CacheKey.prefix(LABELS, owner, repo))
            await self.ledger.record(
                owner, repo, SyncStatus.SUCCESS, sync_type, issues_synced=0, last_sync_at=started_at
            )
            return SyncResult(
                owner=owner,
                repo=repo,
                sync_type=sync_type,
                issues_synced=0,
                labels_synced=labels_synced,
                labels_failed=labels_failed,
                last_sync_at=started_at,
            )

        await self.repository.bulk_upsert_issues(owner, repo, issues)
        self._merge_loaded(owner, repo, issues, replace=sync_type is SyncType.FULL)
        self.cache.invalidate_repository(owner, repo)

        await self.ledger.record(
            owner, repo, SyncStatus.SUCCESS, sync_type, issues_synced=len(issues), last_sync_at=started_at
        )
        logger.info(
            f"{sync_type.value.capitalize()} sync of {owner}/{repo} completed: "
            f"{len(issues)} issues, {labels_synced} labels ({labels_failed} failed)."
        )
        return SyncResult(
            owner=owner,
            repo=repo,
            sync_type=sync_type,
            issues_synced=len(issues),
            labels_synced=labels_synced,
            labels_failed=labels_failed,
            last_sync_at=started_at,
        )

    async def _save_labels(self, owner: str, repo: str, raw_labels: List[Dict[str, Any]]) -> Tuple[int, int]:
        """Best effort: a label that cannot be saved is counted and skipped."""
        saved = failed = 0
        for raw_label in raw_labels:
            try:
                await self.repository.upsert_label(owner, repo, GitHubTranslator.to_label(raw_label))
                saved += 1
            except (ValueError, StoreError) as e:
                failed += 1
                logger.warning(f"Skipping label {raw_label.get('name')!r} of {owner}/{repo}: {e}")
        return saved, failed

    def _merge_loaded(self, owner: str, repo: str, issues: List[IssueEntity], replace: bool) -> None:
        key = repo_key(owner, repo)
        existing = {} if replace else self._loaded.get(key, {})
        self._loaded[key] = merge_issues(existing, issues)

    def remember_issue(self, owner: str, repo: str, issue: IssueEntity) -> None:
        """Merges a single issue (from a webhook or manual edit) into the loaded set, if one exists."""
        key = repo_key(owner, repo)
        if key in self._loaded:
            self._loaded[key] = merge_issues(self._loaded[key], [issue])

    async def _record_failure(
        self, owner: str, repo: str, sync_type: SyncType, error: BaseException, started_at: datetime
    ) -> None:
        try:
            await self.ledger.record(
                owner, repo, SyncStatus.FAILED, sync_type,
                issues_synced=0, error_message=str(error), last_sync_at=started_at,
            )
        except StoreError as ledger_error:
            logger.error(f"Could not record failed sync of {owner}/{repo}: {ledger_error}")

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import aiohttp

from src.application.coalescer import RequestCoalescer
from src.application.config_resolver import ConfigResolver
from src.application.ledger import SyncHistoryLedger
from src.application.sync_service import SyncOrchestrator
from src.domain.cache_keys import LABELS, CacheKey
from src.domain.exceptions import CooldownError, MirrorException
from src.domain.models import IssueEntity, IssuePage, LabelEntity, SyncResult, parse_label_filter
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.cache import MISS, CacheTierManager
from src.infrastructure.database import MirrorRepository
from src.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)


class IssueService:
    """
    Read and write entry points used by the HTTP layer and the CLI.

    Reads go cache first, then through the request coalescer so that concurrent
    callers asking for the same page share a single store read (and, when the
    store is empty, a single sync).
    """

    def __init__(
        self,
        repository: MirrorRepository,
        orchestrator: SyncOrchestrator,
        ledger: SyncHistoryLedger,
        cache: CacheTierManager,
        coalescer: RequestCoalescer,
        config_resolver: ConfigResolver,
        client_factory: Callable[[str], GitHubRestClient] = GitHubRestClient,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.cache = cache
        self.coalescer = coalescer
        self.config_resolver = config_resolver
        self.client_factory = client_factory
        self._session_factory = session_factory

    async def _client(self, owner: str, repo: str) -> GitHubRestClient:
        config = await self.config_resolver.resolve(owner, repo)
        return self.client_factory(self.config_resolver.credential_for(config))

    # Issues

    async def get_issues(
        self,
        owner: str,
        repo: str,
        page: int = 1,
        label_filter: Union[str, Sequence[str], None] = None,
    ) -> IssuePage:
        labels = parse_label_filter(label_filter)
        page = max(page, 1)
        key = CacheKey.issues(owner, repo, page, labels)

        cached = self.cache.get(key)
        if cached is not MISS:
            return cached

        return await self.coalescer.run(key, lambda: self._load_issues(key, owner, repo, page, labels))

    async def _load_issues(
        self, key: CacheKey, owner: str, repo: str, page: int, labels: List[str]
    ) -> IssuePage:
        config = await self.config_resolver.public_config(owner, repo)
        issues, total = await self.repository.list_issues(owner, repo, page, config.page_size, labels)

        refreshed = False
        if not issues and await self.repository.count_issues(owner, repo) == 0:
            logger.info(f"No stored issues for {owner}/{repo}, syncing before serving.")
            refreshed = await self._sync_quietly(owner, repo, swallow_failures=False)
        elif await self.ledger.needs_sync(owner, repo):
            logger.info(f"Stored issues for {owner}/{repo} are stale, refreshing.")
            refreshed = await self._sync_quietly(owner, repo, swallow_failures=True)

        if refreshed:
            issues, total = await self.repository.list_issues(owner, repo, page, config.page_size, labels)

        latest = await self.ledger.latest_success(owner, repo)
        result = IssuePage(
            issues=issues,
            total=total,
            page=page,
            page_size=config.page_size,
            last_sync_at=latest.last_sync_at if latest else None,
        )
        if result.issues:
            self.cache.set(key, result)
        return result

    async def _sync_quietly(self, owner: str, repo: str, swallow_failures: bool) -> bool:
        try:
            await self.orchestrator.sync(owner, repo)
            return True
        except CooldownError as e:
            logger.info(f"Skipping refresh of {owner}/{repo}: {e}")
            return False
        except MirrorException as e:
            if not swallow_failures:
                raise
            # Already recorded in the ledger; stored rows are still served.
            logger.warning(f"Refresh of {owner}/{repo} failed, serving stored issues: {e}")
            return False

    async def get_issue(self, owner: str, repo: str, number: int) -> IssueEntity:
        key = CacheKey.issue(owner, repo, number)
        cached = self.cache.get(key)
        if cached is not MISS:
            return cached
        return await self.coalescer.run(key, lambda: self._load_issue(key, owner, repo, number))

    async def _load_issue(self, key: CacheKey, owner: str, repo: str, number: int) -> IssueEntity:
        issue = self.orchestrator.loaded_issue(owner, repo, number)
        if issue is None:
            issue = await self.repository.get_issue(owner, repo, number)
        if issue is None:
            logger.info(f"Issue {owner}/{repo}#{number} not stored, fetching from GitHub.")
            client = await self._client(owner, repo)
            async with self._session_factory() as session:
                raw_issue = await client.get_issue(session, owner, repo, number)
            issue = await self._store_issue(owner, repo, GitHubTranslator.to_issue(raw_issue))

        self.cache.set(key, issue)
        return issue

    async def _store_issue(self, owner: str, repo: str, issue: IssueEntity) -> IssueEntity:
        await self.repository.upsert_issue(owner, repo, issue)
        stored = await self.repository.get_issue(owner, repo, issue.number) or issue
        self.orchestrator.remember_issue(owner, repo, stored)
        return stored

    async def create_issue(
        self, owner: str, repo: str, title: str, body: str = "", labels: Sequence[str] = ()
    ) -> IssueEntity:
        client = await self._client(owner, repo)
        async with self._session_factory() as session:
            raw_issue = await client.create_issue(session, owner, repo, title, body, labels)

        issue = await self._store_issue(owner, repo, GitHubTranslator.to_issue(raw_issue))
        self.cache.invalidate_repository(owner, repo)
        logger.info(f"Created issue {owner}/{repo}#{issue.number}.")
        return issue

    async def update_issue(
        self,
        owner: str,
        repo: str,
        number: int,
        title: str,
        body: str = "",
        labels: Sequence[str] = (),
        state: Optional[str] = None,
    ) -> IssueEntity:
        client = await self._client(owner, repo)
        async with self._session_factory() as session:
            raw_issue = await client.update_issue(session, owner, repo, number, title, body, labels, state=state)

        issue = await self._store_issue(owner, repo, GitHubTranslator.to_issue(raw_issue))
        self.cache.invalidate_repository(owner, repo)
        logger.info(f"Updated issue {owner}/{repo}#{number}.")
        return issue

    # Labels

    async def get_labels(self, owner: str, repo: str, force: bool = False) -> List[LabelEntity]:
        key = CacheKey.labels(owner, repo)
        if not force:
            cached = self.cache.get(key)
            if cached is not MISS:
                return cached
        return await self.coalescer.run(key, lambda: self._load_labels(key, owner, repo, force))

    async def _load_labels(self, key: CacheKey, owner: str, repo: str, force: bool) -> List[LabelEntity]:
        labels = [] if force else await self.repository.list_labels(owner, repo)
        if not labels:
            client = await self._client(owner, repo)
            async with self._session_factory() as session:
                raw_labels = await client.list_all_labels(session, owner, repo)
            for raw_label in raw_labels:
                await self.repository.upsert_label(owner, repo, GitHubTranslator.to_label(raw_label))
            labels = await self.repository.list_labels(owner, repo)
            logger.info(f"Fetched {len(raw_labels)} labels for {owner}/{repo} from GitHub.")

        if labels:
            self.cache.set(key, labels)
        return labels

    async def create_label(
        self, owner: str, repo: str, name: str, color: str, description: Optional[str] = None
    ) -> LabelEntity:
        client = await self._client(owner, repo)
        async with self._session_factory() as session:
            raw_label = await client.create_label(session, owner, repo, name, color, description)

        label = GitHubTranslator.to_label(raw_label)
        await self.repository.upsert_label(owner, repo, label)
        self.cache.invalidate_prefix(CacheKey.prefix(LABELS, owner, repo))
        logger.info(f"Created label {name!r} for {owner}/{repo}.")
        return label

    # Sync

    async def sync_now(self, owner: str, repo: str, force: bool = False) -> SyncResult:
        return await self.orchestrator.sync(owner, repo, force=force)

    async def sync_status(self, owner: str, repo: str) -> Dict[str, Any]:
        return await self.ledger.status(owner, repo)

    async def health(self) -> Dict[str, Any]:
        return {"status": "healthy", "tables": await self.repository.table_counts()}

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Annotated, Optional

import typer
from aiohttp import web
from typer import Argument, Option

from src.application.coalescer import RequestCoalescer
from src.application.config_resolver import ConfigResolver
from src.application.issue_service import IssueService
from src.application.ledger import SyncHistoryLedger
from src.application.sync_service import SyncOrchestrator
from src.application.webhook_service import WebhookIngestionHandler
from src.domain.exceptions import MirrorException
from src.infrastructure.cache import CacheTierManager, DurableTier, MemoryTier
from src.infrastructure.database import MirrorRepository
from src.infrastructure.encryption import CredentialCipher
from src.infrastructure.github_client import GitHubRestClient
from src.infrastructure.settings import Settings
from src.infrastructure.web import create_app

logger = logging.getLogger(__name__)

typer_app = typer.Typer(pretty_exceptions_show_locals=False, help="Mirror GitHub issues and labels into a database.")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


@dataclass
class Services:
    settings: Settings
    repository: MirrorRepository
    cache: CacheTierManager
    config_resolver: ConfigResolver
    ledger: SyncHistoryLedger
    orchestrator: SyncOrchestrator
    issue_service: IssueService
    webhook_handler: WebhookIngestionHandler

    async def close(self) -> None:
        await self.repository.dispose()
        if self.cache.durable is not None:
            self.cache.durable.close()


def build_services(settings: Settings) -> Services:
    """Wires every component from the runtime settings."""
    if not settings.database_url:
        raise typer.BadParameter("DATABASE_URL is not set in the environment.")

    repository = MirrorRepository(db_url=settings.database_url)
    cache = CacheTierManager(
        memory=MemoryTier(),
        durable=DurableTier(settings.cache_dir),
        policies=settings.cache_policies,
    )
    config_resolver = ConfigResolver.from_settings(
        settings, repository, CredentialCipher(settings.encryption_key), cache
    )
    ledger = SyncHistoryLedger(repository, freshness_hours=settings.sync_freshness_hours)

    def client_factory(token: str) -> GitHubRestClient:
        return GitHubRestClient(token=token, api_url=settings.github_api_url)

    orchestrator = SyncOrchestrator(
        repository,
        ledger,
        cache,
        config_resolver,
        client_factory=client_factory,
        cooldown_seconds=settings.sync_cooldown_seconds,
    )
    issue_service = IssueService(
        repository,
        orchestrator,
        ledger,
        cache,
        RequestCoalescer(timeout=settings.coalesce_timeout_seconds),
        config_resolver,
        client_factory=client_factory,
    )
    webhook_handler = WebhookIngestionHandler(
        settings.webhook_secret,
        repository,
        ledger,
        cache,
        config_resolver,
        on_issue=orchestrator.remember_issue,
    )
    return Services(
        settings=settings,
        repository=repository,
        cache=cache,
        config_resolver=config_resolver,
        ledger=ledger,
        orchestrator=orchestrator,
        issue_service=issue_service,
        webhook_handler=webhook_handler,
    )


def _load() -> Services:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return build_services(settings)


def _target(services: Services, owner: Optional[str], repo: Optional[str]):
    owner = owner or services.settings.github_owner
    repo = repo or services.settings.github_repo
    if not owner or not repo:
        raise typer.BadParameter("Repository owner and name are required (or set GITHUB_OWNER and GITHUB_REPO).")
    return owner, repo


def _run(services: Services, coro) -> None:
    async def runner():
        try:
            return await coro
        finally:
            await services.close()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
    except MirrorException as e:
        logger.error(str(e))
        raise typer.Exit(code=1)


@typer_app.command(name="serve")
def serve_cli(
    host: Annotated[Optional[str], Option(help="Interface to bind. Defaults to HOST.")] = None,
    port: Annotated[Optional[int], Option(help="Port to bind. Defaults to PORT.")] = None,
) -> None:
    """Serve the webhook endpoint and the read/sync API."""
    services = _load()

    async def app_factory() -> web.Application:
        await services.repository.create_schema()
        app = create_app(services.issue_service, services.webhook_handler, services.config_resolver)

        async def close_services(app: web.Application) -> None:
            await services.close()

        app.on_cleanup.append(close_services)
        return app

    web.run_app(
        app_factory(),
        host=host or services.settings.host,
        port=port or services.settings.port,
        print=None,
    )


@typer_app.command(name="sync")
def sync_cli(
    owner: Annotated[Optional[str], Argument(envvar="GITHUB_OWNER", help="Repository owner.")] = None,
    repo: Annotated[Optional[str], Argument(envvar="GITHUB_REPO", help="Repository name.")] = None,
    force: Annotated[bool, Option("--force", help="Run a full sync even if an incremental one is possible.")] = False,
) -> None:
    """Synchronize issues and labels of a repository."""
    services = _load()
    owner, repo = _target(services, owner, repo)

    async def run():
        await services.repository.create_schema()
        result = await services.issue_service.sync_now(owner, repo, force=force)
        typer.echo(
            f"{result.sync_type.value} sync of {owner}/{repo}: {result.issues_synced} issues, "
            f"{result.labels_synced} labels ({result.labels_failed} failed)."
        )

    _run(services, run())


@typer_app.command(name="init-db")
def init_db_cli() -> None:
    """Create the database tables if they do not exist."""
    services = _load()

    async def run():
        await services.repository.create_schema()
        typer.echo("Database schema is ready.")

    _run(services, run())


@typer_app.command(name="configure")
def configure_cli(
    owner: Annotated[str, Argument(help="Repository owner.")],
    repo: Annotated[str, Argument(help="Repository name.")],
    token: Annotated[str, Option(envvar="GITHUB_TOKEN", prompt=True, hide_input=True, help="GitHub token.")],
    page_size: Annotated[Optional[int], Option(help="Issues per page served to readers.")] = None,
) -> None:
    """Save an encrypted configuration for a repository."""
    services = _load()

    async def run():
        await services.repository.create_schema()
        config = await services.config_resolver.save(owner, repo, token, page_size)
        typer.echo(f"Saved configuration for {config.owner}/{config.repo} ({config.page_size} issues per page).")

    _run(services, run())


@typer_app.command(name="status")
def status_cli(
    owner: Annotated[Optional[str], Argument(envvar="GITHUB_OWNER", help="Repository owner.")] = None,
    repo: Annotated[Optional[str], Argument(envvar="GITHUB_REPO", help="Repository name.")] = None,
) -> None:
    """Show the latest sync state of a repository."""
    services = _load()
    owner, repo = _target(services, owner, repo)

    async def run():
        status = await services.issue_service.sync_status(owner, repo)
        typer.echo(json.dumps({"owner": owner, "repo": repo, **status}, indent=2))

    _run(services, run())


if __name__ == "__main__":
    typer_app()

import hashlib
import hmac
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from src.application.config_resolver import ConfigResolver
from src.application.ledger import SyncHistoryLedger
from src.domain.cache_keys import ISSUES, CacheKey
from src.domain.exceptions import (
    MirrorException, RepositoryNotConfigured, SignatureError, StoreError, UnsupportedEventError,
    WebhookPayloadError,
)
from src.domain.models import IngestResult, IssueEntity, SyncStatus, SyncType
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.cache import MISS, CacheTierManager
from src.infrastructure.database import MirrorRepository

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
SUPPORTED_EVENTS = ("issues", "label")


def sign_payload(secret: str, raw_body: bytes) -> str:
    """Computes the X-Hub-Signature-256 header value GitHub sends for a payload."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def _error_body(error: BaseException) -> Dict[str, Any]:
    return {"success": False, "error": {"type": type(error).__name__, "message": str(error)}}


class WebhookIngestionHandler:
    """
    Applies signed GitHub webhook deliveries (issues and label events) to the mirror.

    ingest() never raises: every outcome is an IngestResult carrying the HTTP status
    and body to answer GitHub with. Deliveries that fail verification or cannot even
    be attributed to a repository leave no trace; every other failure is recorded in
    the sync ledger as a failed webhook sync.
    """

    def __init__(
        self,
        secret: Optional[str],
        repository: MirrorRepository,
        ledger: SyncHistoryLedger,
        cache: CacheTierManager,
        config_resolver: ConfigResolver,
        on_issue: Optional[Callable[[str, str, IssueEntity], None]] = None,
    ):
        self.secret = secret
        self.repository = repository
        self.ledger = ledger
        self.cache = cache
        self.config_resolver = config_resolver
        # Called with (owner, repo, issue) after an issue is stored, to refresh in-memory sets.
        self.on_issue = on_issue

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        if not self.secret:
            raise SignatureError("Webhook secret is not configured.")
        if not signature_header:
            raise SignatureError("Missing X-Hub-Signature-256 header.")
        expected = sign_payload(self.secret, raw_body).encode("ascii")
        received = signature_header.strip().encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected, received):
            raise SignatureError("Signature does not match payload.")

    @staticmethod
    def _parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookPayloadError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(event, dict):
            raise WebhookPayloadError("Payload must be a JSON object.")
        return event

    async def ingest(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_type_header: Optional[str],
        delivery_id: Optional[str] = None,
    ) -> IngestResult:
        try:
            self.verify(raw_body, signature_header)
        except SignatureError as e:
            logger.warning(f"Rejected webhook delivery {delivery_id or '-'}: {e}")
            return IngestResult(status_code=401, body=_error_body(e))

        if event_type_header == "ping":
            logger.info(f"Received ping delivery {delivery_id or '-'}.")
            return IngestResult(status_code=200, body={"success": True, "event": "ping"})

        try:
            event = self._parse(raw_body)
            owner, repo = GitHubTranslator.repository_of(event)
            if event_type_header not in SUPPORTED_EVENTS:
                raise UnsupportedEventError(event_type_header)
        except (WebhookPayloadError, UnsupportedEventError) as e:
            logger.warning(f"Ignoring webhook delivery {delivery_id or '-'}: {e}")
            return IngestResult(status_code=400, body=_error_body(e))

        if delivery_id and self.cache.get(CacheKey.delivery(delivery_id)) is not MISS:
            logger.info(f"Delivery {delivery_id} was already applied, skipping.")
            return IngestResult(
                status_code=200,
                body={"success": True, "event": event_type_header, "duplicate": True},
            )

        action = event.get("action")
        try:
            if event_type_header == "issues":
                issues_synced = await self._apply_issue_event(owner, repo, event)
            else:
                issues_synced = await self._apply_label_event(owner, repo, event)
            await self.ledger.record(
                owner, repo, SyncStatus.SUCCESS, SyncType.WEBHOOK, issues_synced=issues_synced
            )
        except (WebhookPayloadError, RepositoryNotConfigured) as e:
            logger.warning(f"Webhook {event_type_header} for {owner}/{repo} rejected: {e}")
            await self._record_failure(owner, repo, e)
            return IngestResult(status_code=400, body=_error_body(e))
        except Exception as e:
            if not isinstance(e, MirrorException):
                logger.exception(f"Unexpected error applying webhook for {owner}/{repo}: {e}")
            else:
                logger.error(f"Webhook {event_type_header} for {owner}/{repo} failed: {e}")
            await self._record_failure(owner, repo, e)
            return IngestResult(status_code=500, body=_error_body(e))

        if delivery_id:
            self.cache.set(CacheKey.delivery(delivery_id), True)

        body: Dict[str, Any] = {"success": True, "event": event_type_header, "issues_synced": issues_synced}
        if action:
            body["action"] = action
        return IngestResult(status_code=200, body=body)

    async def _ensure_configured(self, owner: str, repo: str) -> None:
        if not await self.config_resolver.is_configured(owner, repo):
            raise RepositoryNotConfigured(owner, repo)

    async def _apply_issue_event(self, owner: str, repo: str, event: Dict[str, Any]) -> int:
        raw_issue = event.get("issue")
        if not isinstance(raw_issue, dict):
            raise WebhookPayloadError("Issue event carries no issue object.")
        missing = GitHubTranslator.missing_issue_fields(raw_issue)
        if missing:
            raise WebhookPayloadError(f"Missing required issue fields: {', '.join(missing)}")

        await self._ensure_configured(owner, repo)

        try:
            issue = GitHubTranslator.to_issue(raw_issue)
        except (ValueError, TypeError) as e:
            raise WebhookPayloadError(f"Issue payload is malformed: {e}") from e
        await self.repository.upsert_issue(owner, repo, issue)

        self.cache.invalidate_prefix(CacheKey.prefix(ISSUES, owner, repo))
        self.cache.invalidate(CacheKey.issue(owner, repo, issue.number))
        self._notify_issue(owner, repo, issue)

        logger.info(f"Applied issues.{event.get('action')} for {owner}/{repo}#{issue.number}.")
        return 1

    async def _apply_label_event(self, owner: str, repo: str, event: Dict[str, Any]) -> int:
        raw_label = event.get("label")
        if not isinstance(raw_label, dict) or not raw_label.get("name"):
            raise WebhookPayloadError("Label event carries no label name.")

        await self._ensure_configured(owner, repo)

        action = event.get("action")
        if action == "deleted":
            # Issues keep the orphaned name in their label list.
            await self.repository.delete_label(owner, repo, raw_label["name"])
            self.cache.invalidate_repository(owner, repo)
            logger.info(f"Deleted label {raw_label['name']!r} of {owner}/{repo}.")
            return 0

        try:
            label = GitHubTranslator.to_label(raw_label)
        except (ValueError, TypeError) as e:
            raise WebhookPayloadError(f"Label payload is malformed: {e}") from e
        new_name, old_name = self._label_names(event, label.name)

        await self.repository.upsert_label(owner, repo, label)
        if old_name:
            await self.repository.delete_label(owner, repo, old_name)

        affected = await self.repository.touch_issues_with_labels(
            owner, repo, [name for name in (new_name, old_name) if name]
        )
        self.cache.invalidate_repository(owner, repo)

        renamed = f" (renamed from {old_name!r})" if old_name else ""
        logger.info(f"Applied label.{action} for {owner}/{repo} {new_name!r}{renamed}; {affected} issues touched.")
        return affected

    @staticmethod
    def _label_names(event: Dict[str, Any], name: str) -> Tuple[str, Optional[str]]:
        old_name = ((event.get("changes") or {}).get("name") or {}).get("from")
        if old_name == name:
            old_name = None
        return name, old_name

    def _notify_issue(self, owner: str, repo: str, issue: IssueEntity) -> None:
        if self.on_issue is not None:
            self.on_issue(owner, repo, issue)

    async def _record_failure(self, owner: str, repo: str, error: BaseException) -> None:
        try:
            await self.ledger.record(
                owner, repo, SyncStatus.FAILED, SyncType.WEBHOOK, issues_synced=0, error_message=str(error)
            )
        except StoreError as ledger_error:
            logger.error(f"Could not record failed webhook for {owner}/{repo}: {ledger_error}")

import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from src.application.config_resolver import ConfigResolver
from src.application.ledger import SyncHistoryLedger
from src.application.webhook_service import WebhookIngestionHandler, sign_payload
from src.domain.cache_keys import CacheKey
from src.domain.exceptions import StoreError
from src.domain.models import IssueEntity, LabelEntity, SyncStatus, SyncType
from src.infrastructure.cache import MISS, CacheTierManager
from src.infrastructure.database import MirrorRepository
from src.infrastructure.encryption import CredentialCipher

SECRET = "hook-secret"
REPOSITORY = {"name": "hello", "owner": {"login": "octocat"}}


def _issue_event(number: int = 1, title: str = "Crash", action: str = "opened", **overrides) -> dict:
    issue = {
        "number": number,
        "title": title,
        "body": "details",
        "state": "open",
        "labels": [{"name": "bug", "color": "d73a4a"}],
        "created_at": "2024-05-01T00:00:00Z",
    }
    issue.update(overrides)
    return {"action": action, "issue": issue, "repository": REPOSITORY}


def _label_event(name: str, action: str = "created", renamed_from: str = None) -> dict:
    event = {"action": action, "label": {"id": 9, "name": name, "color": "00ff00"}, "repository": REPOSITORY}
    if renamed_from:
        event["changes"] = {"name": {"from": renamed_from}}
    return event


def _body(event) -> bytes:
    return json.dumps(event).encode("utf-8")


class TestWebhookIngestionHandler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.repository = MirrorRepository(f"sqlite+aiosqlite:///{os.path.join(self._tmp.name, 'mirror.db')}")
        await self.repository.create_schema()

        self.cache = CacheTierManager()
        self.ledger = SyncHistoryLedger(self.repository)
        resolver = ConfigResolver(
            self.repository,
            CredentialCipher("secret", iterations=1000),
            self.cache,
            env_owner="octocat",
            env_repo="hello",
            env_token="ghp_token",
        )
        self.on_issue = MagicMock()
        self.handler = WebhookIngestionHandler(
            SECRET, self.repository, self.ledger, self.cache, resolver, on_issue=self.on_issue
        )

    async def asyncTearDown(self) -> None:
        await self.repository.dispose()
        self._tmp.cleanup()

    async def _deliver(self, event_type: str, event, delivery_id: str = None):
        body = event if isinstance(event, bytes) else _body(event)
        return await self.handler.ingest(body, sign_payload(SECRET, body), event_type, delivery_id)

    async def test_tampered_body_is_rejected_without_side_effects(self) -> None:
        body = _body(_issue_event())
        signature = sign_payload(SECRET, body)
        tampered = _body(_issue_event(title="Injected"))

        result = await self.handler.ingest(tampered, signature, "issues")

        self.assertEqual(result.status_code, 401)
        self.assertFalse(result.body["success"])
        self.assertEqual(await self.repository.count_issues("octocat", "hello"), 0)
        self.assertEqual(await self.ledger.history("octocat", "hello"), [])

    async def test_missing_signature_or_secret_is_rejected(self) -> None:
        body = _body(_issue_event())
        self.assertEqual((await self.handler.ingest(body, None, "issues")).status_code, 401)

        self.handler.secret = None
        self.assertEqual((await self.handler.ingest(body, "sha256=abc", "issues")).status_code, 401)

    async def test_non_ascii_signature_is_rejected(self) -> None:
        body = _body(_issue_event())

        result = await self.handler.ingest(body, "sha256=\u00e9\u00e9", "issues")

        self.assertEqual(result.status_code, 401)
        self.assertEqual(result.body["error"]["type"], "SignatureError")
        self.assertEqual(await self.ledger.history("octocat", "hello"), [])

    async def test_ping_is_acknowledged(self) -> None:
        result = await self._deliver("ping", {"zen": "Keep it logically awesome.", "hook_id": 1})

        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.body, {"success": True, "event": "ping"})

    async def test_malformed_json_is_bad_request(self) -> None:
        result = await self._deliver("issues", b"{not json")

        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.body["error"]["type"], "WebhookPayloadError")

    async def test_unsupported_event_leaves_no_trace(self) -> None:
        result = await self._deliver("push", {"ref": "refs/heads/main", "repository": REPOSITORY})

        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.body["error"]["type"], "UnsupportedEventError")
        self.assertEqual(await self.ledger.history("octocat", "hello"), [])

    async def test_issue_event_upserts_and_invalidates(self) -> None:
        page_key = CacheKey.issues("octocat", "hello", 1)
        issue_key = CacheKey.issue("octocat", "hello", 1)
        other_key = CacheKey.issue("octocat", "hello", 2)
        for key in (page_key, issue_key, other_key):
            self.cache.set(key, "stale")

        result = await self._deliver("issues", _issue_event())

        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.body, {"success": True, "event": "issues", "action": "opened", "issues_synced": 1})
        stored = await self.repository.get_issue("octocat", "hello", 1)
        self.assertEqual(stored.title, "Crash")
        self.assertIs(self.cache.get(page_key), MISS)
        self.assertIs(self.cache.get(issue_key), MISS)
        self.assertEqual(self.cache.get(other_key), "stale")
        self.on_issue.assert_called_once()

        latest = await self.ledger.latest("octocat", "hello")
        self.assertEqual((latest.status, latest.sync_type, latest.issues_synced), (SyncStatus.SUCCESS, SyncType.WEBHOOK, 1))

    async def test_issue_edit_preserves_created_at(self) -> None:
        await self._deliver("issues", _issue_event())
        created_at = (await self.repository.get_issue("octocat", "hello", 1)).created_at

        await self._deliver("issues", _issue_event(title="Crash on start", action="edited"))
        edited = await self.repository.get_issue("octocat", "hello", 1)

        self.assertEqual(edited.title, "Crash on start")
        self.assertEqual(edited.created_at, created_at)
        self.assertEqual(await self.repository.count_issues("octocat", "hello"), 1)

    async def test_missing_issue_fields_is_recorded_as_failure(self) -> None:
        event = _issue_event()
        del event["issue"]["title"]

        result = await self._deliver("issues", event)

        self.assertEqual(result.status_code, 400)
        latest = await self.ledger.latest("octocat", "hello")
        self.assertEqual(latest.status, SyncStatus.FAILED)
        self.assertIn("title", latest.error_message)

    async def test_wrongly_typed_issue_field_is_bad_request(self) -> None:
        result = await self._deliver("issues", _issue_event(number="abc"))

        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.body["error"]["type"], "WebhookPayloadError")
        self.assertEqual((await self.ledger.latest("octocat", "hello")).status, SyncStatus.FAILED)
        self.assertEqual(await self.repository.count_issues("octocat", "hello"), 0)

    async def test_wrongly_typed_label_field_is_bad_request(self) -> None:
        event = _label_event("bug")
        event["label"]["id"] = "abc"

        result = await self._deliver("label", event)

        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.body["error"]["type"], "WebhookPayloadError")
        self.assertEqual(await self.repository.list_labels("octocat", "hello"), [])

    async def test_unconfigured_repository_is_rejected(self) -> None:
        event = _issue_event()
        event["repository"] = {"name": "elsewhere", "owner": {"login": "acme"}}

        result = await self._deliver("issues", event)

        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.body["error"]["type"], "RepositoryNotConfigured")
        self.assertEqual((await self.ledger.latest("acme", "elsewhere")).status, SyncStatus.FAILED)
        self.assertEqual(await self.repository.count_issues("acme", "elsewhere"), 0)

    async def test_label_rename_touches_issues_with_either_name(self) -> None:
        long_ago = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await self.repository.upsert_label("octocat", "hello", LabelEntity(id=9, name="bug", color="ff0000"))
        await self.repository.bulk_upsert_issues(
            "octocat", "hello",
            [
                IssueEntity(number=1, title="a", state="open", labels=[LabelEntity(name="bug")]),
                IssueEntity(number=2, title="b", state="open", labels=[LabelEntity(name="bug"), LabelEntity(name="docs")]),
                IssueEntity(number=3, title="c", state="open", labels=[LabelEntity(name="docs")]),
            ],
            now=long_ago,
        )
        labels_key = CacheKey.labels("octocat", "hello")
        self.cache.set(labels_key, ["stale"])

        result = await self._deliver("label", _label_event("defect", action="edited", renamed_from="bug"))

        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.body["issues_synced"], 2)
        names = [label.name for label in await self.repository.list_labels("octocat", "hello")]
        self.assertEqual(names, ["defect"])
        self.assertIs(self.cache.get(labels_key), MISS)

        untouched = await self.repository.get_issue("octocat", "hello", 3)
        touched = await self.repository.get_issue("octocat", "hello", 1)
        self.assertEqual(untouched.updated_at, long_ago)
        self.assertGreater(touched.updated_at, long_ago + timedelta(days=1))

    async def test_label_delete_keeps_issue_label_names(self) -> None:
        await self.repository.upsert_label("octocat", "hello", LabelEntity(name="bug"))
        await self.repository.upsert_issue(
            "octocat", "hello", IssueEntity(number=1, title="a", state="open", labels=[LabelEntity(name="bug")])
        )

        issue_key = CacheKey.issue("octocat", "hello", 1)
        page_key = CacheKey.issues("octocat", "hello", 1)
        self.cache.set(issue_key, "stale")
        self.cache.set(page_key, "stale")

        result = await self._deliver("label", _label_event("bug", action="deleted"))

        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.body["issues_synced"], 0)
        self.assertEqual(await self.repository.list_labels("octocat", "hello"), [])
        issue = await self.repository.get_issue("octocat", "hello", 1)
        self.assertEqual(issue.label_names, ["bug"])
        self.assertIs(self.cache.get(issue_key), MISS)
        self.assertIs(self.cache.get(page_key), MISS)

    async def test_duplicate_delivery_is_not_reapplied(self) -> None:
        first = await self._deliver("issues", _issue_event(), delivery_id="delivery-1")
        second = await self._deliver("issues", _issue_event(title="Replayed"), delivery_id="delivery-1")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.body["duplicate"])
        self.assertEqual((await self.repository.get_issue("octocat", "hello", 1)).title, "Crash")
        self.assertEqual(len(await self.ledger.history("octocat", "hello")), 1)

    async def test_store_failure_returns_500_and_is_recorded(self) -> None:
        with patch.object(self.repository, "upsert_issue", AsyncMock(side_effect=StoreError("db down"))):
            result = await self._deliver("issues", _issue_event(), delivery_id="delivery-2")

        self.assertEqual(result.status_code, 500)
        self.assertEqual(result.body["error"], {"type": "StoreError", "message": "db down"})
        self.assertEqual((await self.ledger.latest("octocat", "hello")).status, SyncStatus.FAILED)
        self.assertIs(self.cache.get(CacheKey.delivery("delivery-2")), MISS)

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from aiohttp.test_utils import AioHTTPTestCase

from src.domain.exceptions import ConfigError, CooldownError, StoreError, UpstreamError
from src.domain.models import (
    IngestResult, IssueEntity, IssuePage, LabelEntity, PublicRepoConfig, SyncResult, SyncType,
)
from src.infrastructure.web import create_app

SYNCED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestRoutes(AioHTTPTestCase):
    async def get_application(self):
        self.issue_service = MagicMock()
        self.issue_service.get_issues = AsyncMock(return_value=IssuePage(
            issues=[IssueEntity(number=1, title="Crash", state="open", labels=[LabelEntity(name="bug")])],
            total=1,
            page=1,
            page_size=10,
            last_sync_at=SYNCED_AT,
        ))
        self.issue_service.get_labels = AsyncMock(return_value=[LabelEntity(id=1, name="bug", color="d73a4a")])
        self.issue_service.sync_now = AsyncMock(return_value=SyncResult(
            owner="octocat", repo="hello", sync_type=SyncType.FULL, issues_synced=3, labels_synced=2,
            last_sync_at=SYNCED_AT,
        ))
        self.issue_service.sync_status = AsyncMock(return_value={"needs_sync": False, "status": "success"})
        self.issue_service.health = AsyncMock(return_value={"status": "healthy", "tables": {"configs": 1, "issues": 3, "labels": 2}})

        self.webhook_handler = MagicMock()
        self.webhook_handler.ingest = AsyncMock(return_value=IngestResult(
            status_code=200, body={"success": True, "event": "issues", "issues_synced": 1}
        ))

        self.config_resolver = MagicMock()
        self.config_resolver.public_config = AsyncMock(
            return_value=PublicRepoConfig(owner="octocat", repo="hello", page_size=10)
        )
        return create_app(self.issue_service, self.webhook_handler, self.config_resolver)

    async def test_list_issues(self) -> None:
        resp = await self.client.request("GET", "/api/issues?owner=acme&repo=tools&page=2&labels=bug,docs")

        self.assertEqual(resp.status, 200)
        data = await resp.json()
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["issues"][0]["labels"][0]["name"], "bug")
        self.assertEqual(data["last_sync_at"], "2024-06-01T12:00:00Z")
        self.issue_service.get_issues.assert_awaited_once_with("acme", "tools", 2, "bug,docs")

    async def test_list_issues_defaults_to_active_repository(self) -> None:
        resp = await self.client.request("GET", "/api/issues")

        self.assertEqual(resp.status, 200)
        self.issue_service.get_issues.assert_awaited_once_with("octocat", "hello", 1, None)

    async def test_invalid_page_is_bad_request(self) -> None:
        resp = await self.client.request("GET", "/api/issues?owner=a&repo=b&page=two")

        self.assertEqual(resp.status, 400)
        self.issue_service.get_issues.assert_not_awaited()

    async def test_config_error_maps_to_400(self) -> None:
        self.issue_service.get_issues.side_effect = ConfigError("No GitHub configuration found.")

        resp = await self.client.request("GET", "/api/issues?owner=a&repo=b")

        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["error"]["type"], "ConfigError")

    async def test_cooldown_maps_to_429_with_retry_after(self) -> None:
        self.issue_service.sync_now.side_effect = CooldownError("octocat", "hello", 41.2)

        resp = await self.client.request("POST", "/api/sync", json={"owner": "octocat", "repo": "hello"})

        self.assertEqual(resp.status, 429)
        self.assertEqual((await resp.json())["retry_after"], 42)
        self.assertEqual(resp.headers["Retry-After"], "42")

    async def test_upstream_error_maps_to_502(self) -> None:
        self.issue_service.get_labels.side_effect = UpstreamError("Bad credentials", status=401)

        resp = await self.client.request("GET", "/api/labels?owner=octocat&repo=hello")

        self.assertEqual(resp.status, 502)

    async def test_store_error_maps_to_500(self) -> None:
        self.issue_service.sync_status.side_effect = StoreError("db down")

        resp = await self.client.request("GET", "/api/sync?owner=octocat&repo=hello")

        self.assertEqual(resp.status, 500)
        self.assertFalse((await resp.json())["success"])

    async def test_trigger_sync_passes_force(self) -> None:
        resp = await self.client.request(
            "POST", "/api/sync", json={"owner": "octocat", "repo": "hello", "force": True}
        )

        self.assertEqual(resp.status, 200)
        data = await resp.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["sync_type"], "full")
        self.issue_service.sync_now.assert_awaited_once_with("octocat", "hello", force=True)

    async def test_sync_status(self) -> None:
        resp = await self.client.request("GET", "/api/sync?owner=octocat&repo=hello")

        self.assertEqual(await resp.json(), {"owner": "octocat", "repo": "hello", "needs_sync": False, "status": "success"})

    async def test_labels(self) -> None:
        resp = await self.client.request("GET", "/api/labels?owner=octocat&repo=hello&force=true")

        self.assertEqual((await resp.json())[0]["color"], "d73a4a")
        self.issue_service.get_labels.assert_awaited_once_with("octocat", "hello", force=True)

    async def test_webhook_forwards_raw_body_and_headers(self) -> None:
        resp = await self.client.request(
            "POST",
            "/api/webhook/github",
            data=b'{"action": "opened"}',
            headers={
                "X-Hub-Signature-256": "sha256=abc",
                "X-GitHub-Event": "issues",
                "X-GitHub-Delivery": "delivery-1",
            },
        )

        self.assertEqual(resp.status, 200)
        self.webhook_handler.ingest.assert_awaited_once_with(
            b'{"action": "opened"}', "sha256=abc", "issues", "delivery-1"
        )

    async def test_webhook_status_is_passed_through(self) -> None:
        self.webhook_handler.ingest.return_value = IngestResult(status_code=401, body={"success": False})

        resp = await self.client.request("POST", "/api/webhook/github", data=b"{}")

        self.assertEqual(resp.status, 401)

    async def test_public_config_has_no_credential(self) -> None:
        resp = await self.client.request("GET", "/api/config")

        data = await resp.json()
        self.assertEqual(data, {"owner": "octocat", "repo": "hello", "page_size": 10})

    async def test_health_reports_table_counts(self) -> None:
        resp = await self.client.request("GET", "/api/health")

        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["tables"], {"configs": 1, "issues": 3, "labels": 2})

    async def test_health_fails_when_store_is_unreachable(self) -> None:
        self.issue_service.health.side_effect = StoreError("connection refused")

        resp = await self.client.request("GET", "/api/health")

        self.assertEqual(resp.status, 500)
        self.assertEqual((await resp.json())["error"]["type"], "StoreError")


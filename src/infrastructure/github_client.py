import aiohttp
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from src.domain.exceptions import UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
MAX_PAGE_SIZE = 100
# Hard stop for pagination loops: 100 pages of 100 items.
MAX_PAGES = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)


def format_since(since: datetime) -> str:
    """GitHub expects ISO 8601 in UTC. Sub-second precision is floored, which keeps the bound inclusive."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubRestClient:
    """
    Client for the GitHub REST issues and labels endpoints.

    Every failure, transport or HTTP, surfaces as UpstreamError. There is no retry:
    callers record the failure and try again on a later sync.
    """

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "issue-mirror",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.api_url = api_url.rstrip("/")

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.api_url}{path}"
        try:
            async with session.request(
                method, url, params=params, json=payload, headers=self.headers, timeout=REQUEST_TIMEOUT
            ) as response:
                if response.status >= 400:
                    message = await self._error_message(response)
                    logger.warning(f"{method} {path} failed with {response.status}: {message}")
                    raise UpstreamError(message, status=response.status)
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} {path} failed: {e!r}")
            raise UpstreamError(str(e) or e.__class__.__name__) from e

    @staticmethod
    async def _error_message(response) -> str:
        try:
            data = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            return response.reason or "Unknown error"
        if isinstance(data, dict) and data.get('message'):
            return data['message']
        return response.reason or "Unknown error"

    async def list_issues(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        repo: str,
        page: int = 1,
        per_page: int = MAX_PAGE_SIZE,
        since: Optional[datetime] = None,
        labels: Optional[Sequence[str]] = None,
        state: str = "all",
    ) -> List[Dict[str, Any]]:
        """Fetches a single page of issues, most recently updated first."""
        params = {
            "state": state,
            "per_page": str(per_page),
            "page": str(page),
            "sort": "updated",
            "direction": "desc",
        }
        if since is not None:
            params["since"] = format_since(since)
        if labels:
            params["labels"] = ",".join(labels)
        return await self._request(session, "GET", f"/repos/{owner}/{repo}/issues", params=params)

    async def list_all_issues(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        repo: str,
        since: Optional[datetime] = None,
        labels: Optional[Sequence[str]] = None,
        per_page: int = MAX_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        """Follows pagination until a short page comes back."""
        issues: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self.list_issues(session, owner, repo, page=page, per_page=per_page, since=since, labels=labels)
            issues.extend(batch)
            if len(batch) < per_page:
                break
        else:
            logger.warning(f"Stopped paginating issues of {owner}/{repo} after {MAX_PAGES} pages.")

        logger.info(f"Fetched {len(issues)} issues for {owner}/{repo}" + (f" since {format_since(since)}." if since else "."))
        return issues

    async def list_labels(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        repo: str,
        page: int = 1,
        per_page: int = MAX_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        params = {"per_page": str(per_page), "page": str(page)}
        return await self._request(session, "GET", f"/repos/{owner}/{repo}/labels", params=params)

    async def list_all_labels(
        self, session: aiohttp.ClientSession, owner: str, repo: str, per_page: int = MAX_PAGE_SIZE
    ) -> List[Dict[str, Any]]:
        labels: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self.list_labels(session, owner, repo, page=page, per_page=per_page)
            labels.extend(batch)
            if len(batch) < per_page:
                break
        return labels

    async def get_issue(self, session: aiohttp.ClientSession, owner: str, repo: str, number: int) -> Dict[str, Any]:
        return await self._request(session, "GET", f"/repos/{owner}/{repo}/issues/{number}")

    async def create_issue(
        self, session: aiohttp.ClientSession, owner: str, repo: str, title: str, body: str, labels: Sequence[str]
    ) -> Dict[str, Any]:
        payload = {"title": title, "body": body, "labels": list(labels)}
        return await self._request(session, "POST", f"/repos/{owner}/{repo}/issues", payload=payload)

    async def update_issue(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        repo: str,
        number: int,
        title: str,
        body: str,
        labels: Sequence[str],
        state: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"title": title, "body": body, "labels": list(labels)}
        if state is not None:
            payload["state"] = state
        return await self._request(session, "PATCH", f"/repos/{owner}/{repo}/issues/{number}", payload=payload)

    async def create_label(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        repo: str,
        name: str,
        color: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": name, "color": color.lstrip("#")}
        if description is not None:
            payload["description"] = description
        return await self._request(session, "POST", f"/repos/{owner}/{repo}/labels", payload=payload)

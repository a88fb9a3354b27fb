import json
import logging
from typing import Any, Dict, Tuple

from aiohttp import web

from src.application.config_resolver import ConfigResolver
from src.application.issue_service import IssueService
from src.application.webhook_service import WebhookIngestionHandler
from src.domain.exceptions import (
    ConfigError, CooldownError, MirrorException, RepositoryNotConfigured, UpstreamError,
    WebhookPayloadError,
)

logger = logging.getLogger(__name__)

ISSUE_SERVICE = web.AppKey("issue_service", IssueService)
WEBHOOK_HANDLER = web.AppKey("webhook_handler", WebhookIngestionHandler)
CONFIG_RESOLVER = web.AppKey("config_resolver", ConfigResolver)


def _error_response(error: MirrorException) -> web.Response:
    status = 500
    body: Dict[str, Any] = {"success": False, "error": {"type": type(error).__name__, "message": str(error)}}
    headers = {}

    if isinstance(error, (ConfigError, RepositoryNotConfigured, WebhookPayloadError)):
        status = 400
    elif isinstance(error, CooldownError):
        status = 429
        retry_after = max(int(error.remaining_seconds + 0.999), 1)
        body["retry_after"] = retry_after
        headers["Retry-After"] = str(retry_after)
    elif isinstance(error, UpstreamError):
        status = 502

    return web.json_response(body, status=status, headers=headers)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except MirrorException as e:
        logger.warning(f"{request.method} {request.path} failed: {e}")
        return _error_response(e)


def _bad_request(message: str) -> web.HTTPBadRequest:
    body = {"success": False, "error": {"type": "BadRequest", "message": message}}
    return web.HTTPBadRequest(text=json.dumps(body), content_type="application/json")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Any, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _bad_request(f"{name} must be an integer, got {value!r}.") from None


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise _bad_request(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise _bad_request("Request body must be a JSON object.")
    return body


async def _target(request: web.Request, source: Dict[str, Any]) -> Tuple[str, str]:
    """Repository named by the request, or the active configuration's when none is given."""
    owner, repo = source.get("owner"), source.get("repo")
    if owner and repo:
        return owner, repo
    config = await request.app[CONFIG_RESOLVER].public_config()
    return config.owner, config.repo


async def receive_webhook(request: web.Request) -> web.Response:
    result = await request.app[WEBHOOK_HANDLER].ingest(
        await request.read(),
        request.headers.get("X-Hub-Signature-256"),
        request.headers.get("X-GitHub-Event"),
        request.headers.get("X-GitHub-Delivery"),
    )
    return web.json_response(result.body, status=result.status_code)


async def list_issues(request: web.Request) -> web.Response:
    owner, repo = await _target(request, request.query)
    page = _parse_int(request.query.get("page"), "page", 1)
    result = await request.app[ISSUE_SERVICE].get_issues(owner, repo, page, request.query.get("labels"))
    return web.json_response(result.model_dump(mode="json"))


async def get_issue(request: web.Request) -> web.Response:
    owner, repo = await _target(request, request.query)
    number = _parse_int(request.match_info["number"], "number", 0)
    issue = await request.app[ISSUE_SERVICE].get_issue(owner, repo, number)
    return web.json_response(issue.model_dump(mode="json"))


async def create_issue(request: web.Request) -> web.Response:
    body = await _json_body(request)
    owner, repo = await _target(request, body)
    if not body.get("title"):
        raise _bad_request("title is required.")
    issue = await request.app[ISSUE_SERVICE].create_issue(
        owner, repo, body["title"], body.get("body") or "", body.get("labels") or []
    )
    return web.json_response(issue.model_dump(mode="json"), status=201)


async def update_issue(request: web.Request) -> web.Response:
    body = await _json_body(request)
    owner, repo = await _target(request, body)
    number = _parse_int(request.match_info["number"], "number", 0)
    if not body.get("title"):
        raise _bad_request("title is required.")
    issue = await request.app[ISSUE_SERVICE].update_issue(
        owner, repo, number, body["title"], body.get("body") or "", body.get("labels") or [],
        state=body.get("state"),
    )
    return web.json_response(issue.model_dump(mode="json"))


async def list_labels(request: web.Request) -> web.Response:
    owner, repo = await _target(request, request.query)
    force = _parse_bool(request.query.get("force", "false"))
    labels = await request.app[ISSUE_SERVICE].get_labels(owner, repo, force=force)
    return web.json_response([label.model_dump(mode="json") for label in labels])


async def create_label(request: web.Request) -> web.Response:
    body = await _json_body(request)
    owner, repo = await _target(request, body)
    if not body.get("name") or not body.get("color"):
        raise _bad_request("name and color are required.")
    label = await request.app[ISSUE_SERVICE].create_label(
        owner, repo, body["name"], body["color"], body.get("description")
    )
    return web.json_response(label.model_dump(mode="json"), status=201)


async def sync_status(request: web.Request) -> web.Response:
    owner, repo = await _target(request, request.query)
    status = await request.app[ISSUE_SERVICE].sync_status(owner, repo)
    return web.json_response({"owner": owner, "repo": repo, **status})


async def trigger_sync(request: web.Request) -> web.Response:
    body = await _json_body(request) if request.can_read_body else {}
    owner, repo = await _target(request, body)
    result = await request.app[ISSUE_SERVICE].sync_now(owner, repo, force=_parse_bool(body.get("force", False)))
    return web.json_response({"success": True, **result.model_dump(mode="json")})


async def health(request: web.Request) -> web.Response:
    return web.json_response(await request.app[ISSUE_SERVICE].health())


async def get_config(request: web.Request) -> web.Response:
    config = await request.app[CONFIG_RESOLVER].public_config(
        request.query.get("owner"), request.query.get("repo")
    )
    return web.json_response(config.model_dump(mode="json"))


async def save_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    page_size = _parse_int(body.get("page_size"), "page_size", 0) or None
    config = await request.app[CONFIG_RESOLVER].save(
        body.get("owner") or "", body.get("repo") or "", body.get("token") or "", page_size
    )
    return web.json_response(config.model_dump(mode="json"))


def create_app(
    issue_service: IssueService,
    webhook_handler: WebhookIngestionHandler,
    config_resolver: ConfigResolver,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[ISSUE_SERVICE] = issue_service
    app[WEBHOOK_HANDLER] = webhook_handler
    app[CONFIG_RESOLVER] = config_resolver

    app.router.add_post("/api/webhook/github", receive_webhook)
    app.router.add_get("/api/issues", list_issues)
    app.router.add_post("/api/issues", create_issue)
    app.router.add_get("/api/issues/{number}", get_issue)
    app.router.add_patch("/api/issues/{number}", update_issue)
    app.router.add_get("/api/labels", list_labels)
    app.router.add_post("/api/labels", create_label)
    app.router.add_get("/api/sync", sync_status)
    app.router.add_post("/api/sync", trigger_sync)
    app.router.add_get("/api/config", get_config)
    app.router.add_post("/api/config", save_config)
    app.router.add_get("/api/health", health)
    return app

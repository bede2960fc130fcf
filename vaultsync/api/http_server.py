"""
HTTP API for vaultsync.

This module exposes the access-control core over REST. It's useful for:
- Thin clients that cannot embed the core
- Manual testing and debugging against a local store

Invariants:
    - Every container route requires the X-User-ID header
    - Access decisions are made on memberships and grants freshly read
      from the store into a per-request ContainerAccess; the session caches
      only ever hold subscribed containers
    - A user may only release a retain they hold; retains are counted per
      (user, container)
    - PATCH routes are Edit-gated; the coordinator itself never checks
    - JSON request/response format; errors carry error and error_code

How to change safely:
    - Map new VaultSyncError subclasses in ERROR_STATUS
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..audit.log import AuditResult
from ..config import HttpConfig
from ..errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
    VaultSyncError,
)
from ..model.entities import EntityRef
from ..model.permissions import Permission
from ..session import ContainerAccess, VaultSession

logger = logging.getLogger(__name__)

SESSION_KEY = web.AppKey("session", VaultSession)
RETAINS_KEY = web.AppKey("retains", dict)

RELEASE = "Release"

ERROR_STATUS: dict[type[VaultSyncError], int] = {
    ValidationError: 400,
    AccessDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StoreUnavailableError: 503,
}


def _json_error(status: int, message: str, code: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, "error_code": code, **extra}, status=status)


def create_http_app(session: VaultSession, config: HttpConfig | None = None) -> web.Application:
    """Create the aiohttp application.

    Args:
        session: Multi-user session (identity is taken per request)
        config: HTTP configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    origins = config.origins

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ConflictError as e:
            return _json_error(409, e.message, e.code, current_edited_at=e.current_edited_at)
        except VaultSyncError as e:
            status = ERROR_STATUS.get(type(e), 500)
            if status >= 500:
                logger.warning(f"Store error: {e}", extra={"path": request.path})
            return _json_error(status, e.message, e.code, details=e.details)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return _json_error(500, str(e), "INTERNAL")

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in origins or origin in origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-ID"
        return response

    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[SESSION_KEY] = session
    app[RETAINS_KEY] = {}

    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/containers/{cid}/access", handle_access)
    app.router.add_patch("/v1/containers/{cid}", handle_patch)
    app.router.add_patch("/v1/containers/{cid}/subcontainers/{sid}", handle_patch)
    app.router.add_patch("/v1/containers/{cid}/items/{iid}", handle_patch)
    app.router.add_post("/v1/containers/{cid}/audit", handle_audit)
    app.router.add_post("/v1/containers/{cid}/retain", handle_retain)
    app.router.add_post("/v1/containers/{cid}/release", handle_release)
    app.router.add_get("/v1/containers/{cid}/memberships", handle_memberships)
    app.router.add_get("/v1/containers/{cid}/grants", handle_grants)

    return app


def extract_user(request: web.Request) -> str:
    """Acting user id from the X-User-ID header.

    Raises:
        web.HTTPUnauthorized: If the header is missing
    """
    user_id = request.headers.get("X-User-ID", "").strip()
    if not user_id:
        raise web.HTTPUnauthorized(
            text=json.dumps({"error": "X-User-ID header is required", "error_code": "UNAUTHENTICATED"}),
            content_type="application/json",
        )
    return user_id


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body; an empty body is an empty object."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body", "error_code": "VALIDATION_ERROR"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object", "error_code": "VALIDATION_ERROR"}),
            content_type="application/json",
        )
    return body


async def load_access(session: VaultSession, container_id: str) -> ContainerAccess:
    """Read access state for a container for the current request.

    Raises:
        NotFoundError: If the container does not exist
    """
    access = await session.load_access(container_id)
    if access is None:
        raise NotFoundError(f"Container not found: {container_id}", f"containers/{container_id}")
    return access


def _ref_from_route(request: web.Request) -> EntityRef:
    cid = request.match_info["cid"]
    if "iid" in request.match_info:
        return EntityRef.item(cid, request.match_info["iid"])
    if "sid" in request.match_info:
        return EntityRef.sub_container(cid, request.match_info["sid"])
    return EntityRef.container(cid)


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Health check."""
    session = request.app[SESSION_KEY]
    healthy = session.store.is_connected
    result = {
        "healthy": healthy,
        "store_backend": session.config.store.backend.value,
        "subscribed": len(session.subscriptions.subscribed),
        "pending_audit": session.audit.pending,
    }
    return web.json_response(result, status=200 if healthy else 503)


async def handle_access(request: web.Request) -> web.Response:
    """Handle GET /v1/containers/{cid}/access - Resolve access at a scope."""
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    sub_container_id = request.query.get("sub_container_id") or None
    item_id = request.query.get("item_id") or None
    access = await load_access(session, cid)

    result: dict[str, Any] = {
        "container_id": cid,
        "sub_container_id": sub_container_id,
        "item_id": item_id,
        "user_id": user_id,
        "capabilities": access.resolver.capabilities(cid, sub_container_id, item_id, user_id).to_dict(),
    }
    if "permission" in request.query:
        try:
            permission = Permission.parse(request.query["permission"])
        except ValueError as e:
            raise ValidationError(str(e), "permission")
        result["permission"] = permission.value
        result["allowed"] = access.resolver.resolve(cid, sub_container_id, item_id, user_id, permission)
    return web.json_response(result)


async def handle_patch(request: web.Request) -> web.Response:
    """Handle PATCH on a container, sub-container or item - Edit-gated patch.

    Body:
        {"patch": {...}, "expected_edited_at": 1700000000000}
    """
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    ref = _ref_from_route(request)
    body = await read_json(request)
    patch = body.get("patch")
    expected = body.get("expected_edited_at")
    if expected is not None and (not isinstance(expected, int) or isinstance(expected, bool)):
        raise ValidationError("expected_edited_at must be an integer", "expected_edited_at")

    access = await load_access(session, ref.container_id)
    sub_container_id, item_id = await session.scope_of(ref)
    access.resolver.require(ref.container_id, sub_container_id, item_id, user_id, Permission.EDIT)
    result = await session.coordinator.mutate(ref, patch, expected, actor_id=user_id)
    return web.json_response(
        {
            "path": ref.path,
            "edited_at": result.edited_at,
            "changes": result.changes,
            "document": result.document,
        }
    )


def _audit_result_dict(result: AuditResult) -> dict[str, Any]:
    return {
        "recorded": result.recorded,
        "skipped": result.skipped,
        "duplicate": result.duplicate,
        "event": result.event.to_dict() if result.event else None,
        "error": result.error,
    }


async def handle_audit(request: web.Request) -> web.Response:
    """Handle POST /v1/containers/{cid}/audit - Append an audit event.

    Body:
        {"type": "ITEM_VIEWED", "payload": {...}}
    """
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    body = await read_json(request)
    event_type = body.get("type")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("type is required", "type")

    access = await load_access(session, cid)
    access.resolver.require(cid, None, None, user_id, Permission.VIEW)
    result = await session.record(cid, event_type, body.get("payload"), user_id=user_id)
    return web.json_response(_audit_result_dict(result), status=201 if result.recorded else 200)


async def handle_retain(request: web.Request) -> web.Response:
    """Handle POST /v1/containers/{cid}/retain - Keep a container live."""
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    access = await load_access(session, cid)
    access.resolver.require(cid, None, None, user_id, Permission.VIEW)
    count = await session.retain(cid)
    retains = request.app[RETAINS_KEY]
    retains[(user_id, cid)] = retains.get((user_id, cid), 0) + 1
    return web.json_response(
        {"container_id": cid, "ref_count": count, "subscribed": session.subscriptions.is_subscribed(cid)}
    )


async def handle_release(request: web.Request) -> web.Response:
    """Handle POST /v1/containers/{cid}/release - Drop one of the caller's live references.

    Raises:
        AccessDeniedError: If the caller holds no retain on the container
    """
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    retains = request.app[RETAINS_KEY]
    held = retains.get((user_id, cid), 0)
    if held <= 0:
        raise AccessDeniedError(user_id, cid, RELEASE)
    if held == 1:
        del retains[(user_id, cid)]
    else:
        retains[(user_id, cid)] = held - 1
    count = await session.release(cid)
    return web.json_response(
        {"container_id": cid, "ref_count": count, "subscribed": session.subscriptions.is_subscribed(cid)}
    )


async def handle_memberships(request: web.Request) -> web.Response:
    """Handle GET /v1/containers/{cid}/memberships - List memberships."""
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    access = await load_access(session, cid)
    access.resolver.require(cid, None, None, user_id, Permission.VIEW)
    rows = sorted(access.memberships.for_container(cid), key=lambda m: m.user_id)
    return web.json_response({"container_id": cid, "memberships": [m.to_dict() for m in rows]})


async def handle_grants(request: web.Request) -> web.Response:
    """Handle GET /v1/containers/{cid}/grants - List scoped grants."""
    session = request.app[SESSION_KEY]
    user_id = extract_user(request)
    cid = request.match_info["cid"]
    access = await load_access(session, cid)
    access.resolver.require(cid, None, None, user_id, Permission.VIEW)
    grants = sorted(access.grants.for_container(cid), key=lambda g: g.id)
    return web.json_response({"container_id": cid, "grants": [g.to_dict() for g in grants]})


async def run_http_server(session: VaultSession, config: HttpConfig | None = None) -> None:
    """Run the HTTP server until cancelled.

    Args:
        session: Multi-user session
        config: HTTP configuration
    """
    config = config or HttpConfig()
    app = create_http_app(session, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")

    # Keep running until cancelled
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()

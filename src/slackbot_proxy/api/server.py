"""FastAPI app exposing relation administration and Slack interaction checks."""

from __future__ import annotations

import asyncio
import json
import secrets
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slack_sdk.signature import SignatureVerifier

from slackbot_proxy import __version__
from slackbot_proxy.core.logging import alog_event, log_event
from slackbot_proxy.core.metrics import snapshot_kpis
from slackbot_proxy.core.relation import CommandScope, Relation, serialize_permission_map
from slackbot_proxy.services import RelationsService, SupportedCommandsError, build_relations_service
from slackbot_proxy.settings import get_settings
from slackbot_proxy.store.relations import RelationNotFoundError
from slackbot_proxy.utils.env import mask

settings = get_settings()
ADMIN_TOKEN_HEADER = "X-Proxy-Token"
SHUTDOWN_DRAIN_SECONDS = 5.0

_SERVICE: RelationsService | None = None


class ProxyUnauthorized(Exception):
    """Raised when an admin or Slack request fails authentication."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PermissionCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    relation_id: int = Field(alias="relationId")
    command_type: str = Field(alias="commandType")
    channel_name: str = Field(alias="channelName")
    scope: CommandScope = CommandScope.SINGLE_USE


app = FastAPI(title=settings.app_brand, version=__version__)


@app.exception_handler(ProxyUnauthorized)
async def handle_unauthorized(_: Request, exc: ProxyUnauthorized) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"ok": False, "error": "unauthorized", "reason": exc.reason},
    )


def get_service() -> RelationsService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = build_relations_service(get_settings())
    return _SERVICE


async def close_service(service: RelationsService, timeout: float = SHUTDOWN_DRAIN_SECONDS) -> None:
    """Let in-flight refreshes finish, then release the GROWI client."""

    cancelled = await service.tasks.shutdown(timeout)
    if cancelled:
        await alog_event("api", "shutdown", "cancelled pending refreshes", level="WARN", cancelled=cancelled)
    await service.client.aclose()


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    global _SERVICE
    if _SERVICE is None:
        return
    await close_service(_SERVICE)
    _SERVICE = None


def _require_token(request: Request) -> None:
    current = get_settings()
    if not current.auth_required:
        return
    configured = current.admin_token
    provided = request.headers.get(ADMIN_TOKEN_HEADER)
    if not configured or not provided or not secrets.compare_digest(provided, configured):
        log_event("api", "auth", "reject", level="WARN", has_token=bool(provided))
        raise ProxyUnauthorized("missing_or_bad_token")


def _verify_slack_signature(body: bytes, headers: dict[str, str]) -> None:
    signing_secret = get_settings().slack_signing_secret
    if not signing_secret:
        return
    verifier = SignatureVerifier(signing_secret)
    if not verifier.is_valid_request(body, headers):
        log_event("api", "slack.interactions", "bad signature", level="WARN")
        raise ProxyUnauthorized("bad_signature")


def relation_summary(relation: Relation) -> dict[str, Any]:
    return {
        "id": relation.id,
        "installationId": relation.installation_id,
        "growiUri": relation.growi_uri,
        "tokenPtoG": mask(relation.token_ptog, show=4),
        "tokenGtoP": mask(relation.token_gtop, show=4),
        "permissionsForSingleUseCommands": serialize_permission_map(
            relation.permissions_for_single_use_commands
        ),
        "permissionsForBroadcastUseCommands": serialize_permission_map(
            relation.permissions_for_broadcast_use_commands
        ),
        "expiredAtCommands": relation.expired_at_commands.isoformat(),
    }


def parse_interaction_payload(body: bytes) -> dict[str, Any]:
    """Decode the ``payload`` form field Slack posts for interactions."""

    form = parse_qs(body.decode("utf-8"))
    raw = form.get("payload")
    if not raw:
        raise ValueError("missing payload field")
    payload = json.loads(raw[0])
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    return payload


def interaction_fields(payload: dict[str, Any]) -> tuple[str, str, str, str]:
    """Return ``(team_id, action_id, callback_id, channel_name)`` from an interaction."""

    team = payload.get("team") or {}
    team_id = str(team.get("id") or "")
    actions = payload.get("actions") or []
    action_id = ""
    if actions and isinstance(actions[0], dict):
        action_id = str(actions[0].get("action_id") or "")
    view = payload.get("view") or {}
    callback_id = str(view.get("callback_id") or payload.get("callback_id") or "")
    channel = payload.get("channel") or {}
    channel_name = str(channel.get("name") or "")
    return team_id, action_id, callback_id, channel_name


@app.get("/healthz")
async def healthz(service: RelationsService = Depends(get_service)) -> dict[str, Any]:
    count = await asyncio.to_thread(service.store.count)
    return {
        "ok": True,
        "relations": count,
        "ts": datetime.now(UTC).isoformat(),
    }


@app.get("/metrics")
async def metrics() -> dict[str, Any]:
    return {
        "ok": True,
        "ts": datetime.now(UTC).isoformat(timespec="seconds"),
        "kpi": snapshot_kpis(),
        "version": __version__,
    }


@app.get("/api/relations", dependencies=[Depends(_require_token)])
async def api_relations(service: RelationsService = Depends(get_service)) -> dict[str, Any]:
    relations = await asyncio.to_thread(service.store.list_relations)
    return {"ok": True, "relations": [relation_summary(relation) for relation in relations]}


@app.post("/api/relations/{relation_id}/sync", dependencies=[Depends(_require_token)])
async def api_sync_relation(
    relation_id: int, service: RelationsService = Depends(get_service)
) -> JSONResponse:
    try:
        relation = await asyncio.to_thread(service.store.get, relation_id)
    except RelationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="relation not found") from exc
    try:
        synced = await service.sync_supported_growi_commands(relation)
    except SupportedCommandsError as exc:
        await alog_event(
            "api",
            "relations.sync",
            "forced sync failed",
            level="ERROR",
            relation_id=relation_id,
            error=exc.reason,
        )
        return JSONResponse(
            status_code=502,
            content={"ok": False, "error": "sync_failed", "reason": exc.reason},
        )
    return JSONResponse({"ok": True, "relation": relation_summary(synced)})


@app.post("/api/permissions/check", dependencies=[Depends(_require_token)])
async def api_check_permission(
    body: PermissionCheckRequest, service: RelationsService = Depends(get_service)
) -> dict[str, Any]:
    try:
        relation = await asyncio.to_thread(service.store.get, body.relation_id)
    except RelationNotFoundError as exc:
        raise HTTPException(status_code=404, detail="relation not found") from exc
    allowed = await service.is_allowed(
        relation, body.command_type, body.channel_name, scope=body.scope
    )
    return {"ok": True, "allowed": allowed}


@app.post("/slack/interactions")
async def slack_interactions(
    request: Request, service: RelationsService = Depends(get_service)
) -> dict[str, Any]:
    body = await request.body()
    _verify_slack_signature(body, dict(request.headers))
    try:
        payload = parse_interaction_payload(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid interaction payload: {exc}") from exc

    team_id, action_id, callback_id, channel_name = interaction_fields(payload)
    relations = await asyncio.to_thread(service.store.find_by_installation, team_id)
    result = await service.check_permission_for_interactions(
        relations, action_id, callback_id, channel_name
    )
    await alog_event(
        "api",
        "slack.interactions",
        "interaction checked",
        team_id=team_id,
        command=result.command_name or "-",
        allowed=len(result.allowed_relations),
        disallowed=len(result.disallowed_growi_urls),
    )
    return {"ok": True, **result.to_dict()}


def create_app() -> FastAPI:
    return app

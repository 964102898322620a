"""Slackbot proxy command-line interface."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import typer

from slackbot_proxy.core.logging import ensure_runtime_dirs, log_event
from slackbot_proxy.core.relation import NEVER_SYNCED, CommandScope, Relation
from slackbot_proxy.services import RelationsService, SupportedCommandsError, build_relations_service
from slackbot_proxy.settings import get_settings
from slackbot_proxy.store.relations import RelationNotFoundError
from slackbot_proxy.utils.env import mask

from . import __version__

app = typer.Typer(name="slackbot-proxy", help="Slackbot proxy relation tooling.")
relations_app = typer.Typer(help="Pair, inspect and sync GROWI relations.")

app.add_typer(relations_app, name="relations")

ensure_runtime_dirs()


def _service() -> RelationsService:
    return build_relations_service(get_settings())


def _run(service: RelationsService, coro: Any) -> Any:
    async def _main() -> Any:
        try:
            return await coro
        finally:
            await service.tasks.drain()
            await service.client.aclose()

    return asyncio.run(_main())


def _load(service: RelationsService, relation_id: int) -> Relation:
    try:
        return service.store.get(relation_id)
    except RelationNotFoundError:
        typer.secho(f"relation {relation_id} not found", err=True, fg=typer.colors.RED)
        raise typer.Exit(1)


def _format_permissions(permissions: dict[str, Any]) -> str:
    if not permissions:
        return "-"
    return ",".join(sorted(permissions))


@app.command()
def version() -> None:
    """Print the proxy version."""

    typer.echo(__version__)


@relations_app.command("list")
def relations_list() -> None:
    """List paired relations."""

    service = _service()
    relations = service.store.list_relations()
    if not relations:
        typer.echo("no relations")
        return
    now = datetime.now(tz=UTC)
    for relation in relations:
        remaining = relation.distance_to_expired_at(now).total_seconds() / 3600
        typer.echo(
            f"{relation.id}: {relation.growi_uri} installation={relation.installation_id} "
            f"token={mask(relation.token_ptog, show=4)} "
            f"single={_format_permissions(dict(relation.permissions_for_single_use_commands))} "
            f"broadcast={_format_permissions(dict(relation.permissions_for_broadcast_use_commands))} "
            f"expires_in={remaining:.1f}h"
        )


@relations_app.command("add")
def relations_add(
    installation_id: str = typer.Option(..., "--installation", help="Slack team id."),
    growi_uri: str = typer.Option(..., "--growi-uri"),
    token_ptog: str = typer.Option(..., "--token-ptog", help="Token sent to GROWI."),
    token_gtop: str = typer.Option(..., "--token-gtop", help="Token GROWI sends to the proxy."),
) -> None:
    """Pair a GROWI instance; its permissions are fetched on first use."""

    service = _service()
    now = datetime.now(tz=UTC)
    relation = Relation(
        installation_id=installation_id,
        growi_uri=growi_uri,
        token_ptog=token_ptog,
        token_gtop=token_gtop,
        expired_at_commands=NEVER_SYNCED,
        created_at=now,
        updated_at=now,
    )
    saved = service.store.save(relation)
    log_event("cli", "relations.add", "relation paired", relation_id=saved.id, growi_uri=growi_uri)
    typer.echo(f"relation {saved.id} paired with {growi_uri}")


@relations_app.command("remove")
def relations_remove(relation_id: int) -> None:
    """Remove a relation."""

    service = _service()
    if not service.store.delete(relation_id):
        typer.secho(f"relation {relation_id} not found", err=True, fg=typer.colors.RED)
        raise typer.Exit(1)
    log_event("cli", "relations.remove", "relation removed", relation_id=relation_id)
    typer.echo(f"relation {relation_id} removed")


@relations_app.command("sync")
def relations_sync(relation_id: int) -> None:
    """Fetch permissions from GROWI now, regardless of expiry."""

    service = _service()
    relation = _load(service, relation_id)
    try:
        synced = _run(service, service.sync_supported_growi_commands(relation))
    except SupportedCommandsError as exc:
        log_event("cli", "relations.sync", "sync failed", level="ERROR", relation_id=relation_id, error=exc.reason)
        typer.secho(f"sync failed: {exc.reason}", err=True, fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(
        f"relation {synced.id} synced; expires at {synced.expired_at_commands.isoformat(timespec='seconds')}"
    )


@relations_app.command("check")
def relations_check(
    relation_id: int,
    command: str,
    channel: str,
    broadcast: bool = typer.Option(False, "--broadcast", help="Check broadcast-use permissions."),
) -> None:
    """Report whether COMMAND is permitted in CHANNEL for a relation."""

    service = _service()
    relation = _load(service, relation_id)
    scope = CommandScope.BROADCAST_USE if broadcast else CommandScope.SINGLE_USE
    allowed = _run(service, service.is_allowed(relation, command, channel, scope=scope))
    typer.echo(f"{command} in #{channel}: {'allowed' if allowed else 'denied'}")
    if not allowed:
        raise typer.Exit(1)


@app.command("authorize")
def authorize(
    installation_id: str = typer.Option(..., "--installation", help="Slack team id."),
    action_id: str = typer.Option("", "--action-id"),
    callback_id: str = typer.Option("", "--callback-id"),
    channel: str = typer.Option(..., "--channel"),
) -> None:
    """Evaluate an interaction against every relation of an installation."""

    service = _service()
    relations = service.store.find_by_installation(installation_id)
    result = _run(
        service,
        service.check_permission_for_interactions(relations, action_id, callback_id, channel),
    )
    typer.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    """Run the HTTP app with uvicorn."""

    import uvicorn

    from slackbot_proxy.utils.logging_setup import setup_logging

    setup_logging()
    settings = get_settings()
    uvicorn.run(
        "slackbot_proxy.api.server:create_app",
        host=host or settings.server_host,
        port=port or settings.server_port,
        factory=True,
        log_level="info",
    )


if __name__ == "__main__":
    app()

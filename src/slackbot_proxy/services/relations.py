"""Relation permission synchronization and evaluation."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from slackbot_proxy.core.logging import alog_event
from slackbot_proxy.core.metrics import METRICS
from slackbot_proxy.core.relation import CommandScope, Relation
from slackbot_proxy.core.tasks import DetachedTasks
from slackbot_proxy.store.relations import RelationNotFoundError, RelationStore

from .supported_commands import SupportedCommands, SupportedCommandsClient

log = logging.getLogger("slackbot_proxy.relations")

COMMANDS_TTL = timedelta(hours=48)
REFRESH_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def command_pattern(command_name: str) -> re.Pattern[str]:
    """Match ``search`` exactly or ``search:<handler>``."""

    escaped = re.escape(command_name)
    return re.compile(rf"^{escaped}\Z|^{escaped}:\w+")


def match_command(relation: Relation, action_id: str | None, callback_id: str | None) -> str | None:
    """Return the first registered command matching either identifier."""

    action = action_id or ""
    callback = callback_id or ""
    for name in relation.command_names():
        pattern = command_pattern(name)
        if pattern.match(action) or pattern.match(callback):
            return name
    return None


@dataclass(slots=True)
class InteractionPermissions:
    """Aggregated authorization result for one interaction."""

    allowed_relations: list[Relation] = field(default_factory=list)
    disallowed_growi_urls: set[str] = field(default_factory=set)
    command_name: str = ""
    matched_commands: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commandName": self.command_name,
            "allowedGrowiUris": [relation.growi_uri for relation in self.allowed_relations],
            "disallowedGrowiUris": sorted(self.disallowed_growi_urls),
            "matchedCommands": dict(self.matched_commands),
        }


@dataclass(frozen=True, slots=True)
class _InteractionOutcome:
    relation: Relation
    command_name: str | None
    allowed: bool
    failed: bool = False


@dataclass(frozen=True, slots=True)
class _SyncOutcome:
    relation: Relation | None
    error: Exception | None = None


class RelationsService:
    """Keep cached command permissions fresh and answer permission questions."""

    def __init__(
        self,
        store: RelationStore,
        client: SupportedCommandsClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
        tasks: DetachedTasks | None = None,
        commands_ttl: timedelta = COMMANDS_TTL,
        refresh_window: timedelta = REFRESH_WINDOW,
    ) -> None:
        self.store = store
        self.client = client
        self.clock = clock
        self.tasks = tasks if tasks is not None else DetachedTasks("relations")
        self.commands_ttl = commands_ttl
        self.refresh_window = refresh_window
        self._inflight: dict[str, asyncio.Task[_SyncOutcome]] = {}

    async def get_supported_growi_commands(self, relation: Relation) -> SupportedCommands:
        return await self.client.fetch(relation)

    async def _fetch_and_save(self, relation: Relation, now: datetime) -> Relation:
        commands = await self.get_supported_growi_commands(relation)
        updated = replace(
            relation,
            permissions_for_broadcast_use_commands=commands.permissions_for_broadcast_use_commands,
            permissions_for_single_use_commands=commands.permissions_for_single_use_commands,
            expired_at_commands=now + self.commands_ttl,
            updated_at=now,
        )
        return await asyncio.to_thread(self.store.save, updated)

    async def _guarded_sync(self, relation: Relation, now: datetime) -> _SyncOutcome:
        try:
            saved = await self._fetch_and_save(relation, now)
        except Exception as exc:
            METRICS.increment_counter("relations_sync_failed_total")
            log.warning("Permission sync failed for %s: %s", relation.growi_uri, exc)
            await alog_event(
                "relations",
                "relations.sync",
                "permission sync failed",
                level="ERROR",
                growi_uri=relation.growi_uri,
                relation_id=relation.id,
                error=getattr(exc, "reason", None) or repr(exc),
            )
            return _SyncOutcome(None, exc)

        METRICS.increment_counter("relations_sync_ok_total")
        await alog_event(
            "relations",
            "relations.sync",
            "permissions synced",
            growi_uri=saved.growi_uri,
            relation_id=saved.id,
            expired_at=saved.expired_at_commands.isoformat(),
        )
        return _SyncOutcome(saved)

    def _refresh(self, relation: Relation, now: datetime) -> asyncio.Task[_SyncOutcome]:
        """Return the in-flight refresh for ``relation``, starting one if needed."""

        key = relation.sync_key
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return task

        task = self.tasks.spawn(self._guarded_sync(relation, now), name=f"sync:{key}")
        self._inflight[key] = task

        def _forget(done: asyncio.Task[_SyncOutcome]) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_forget)
        return task

    async def sync_supported_growi_commands(
        self, relation: Relation | None, now: datetime | None = None
    ) -> Relation:
        """Fetch fresh permission maps regardless of expiry and return the saved relation.

        A refresh of the same relation that is already running is joined rather
        than repeated, so its outcome (and its ``now``) is what the caller gets.
        Remote failures are raised, typically as ``SupportedCommandsError``.
        """

        if relation is None:
            raise RelationNotFoundError(None)
        synced_at = now if now is not None else self.clock()
        outcome = await asyncio.shield(self._refresh(relation, synced_at))
        if outcome.error is not None:
            raise outcome.error
        return outcome.relation

    async def sync_relation(self, relation: Relation | None, base_date: datetime) -> Relation | None:
        """Return a relation whose permission maps may be trusted at ``base_date``.

        Expired maps are refreshed before returning; ``None`` means the refresh
        failed and the store still holds the previous record. Maps that expire
        within the refresh window are refreshed in the background while the
        current relation is returned immediately.
        """

        if relation is None:
            return None

        distance = relation.distance_to_expired_at(base_date)

        if distance < timedelta(0):
            outcome = await asyncio.shield(self._refresh(relation, base_date))
            return outcome.relation

        if distance < self.refresh_window:
            METRICS.increment_counter("relations_refresh_detached_total")
            self._refresh(relation, base_date)

        return relation

    async def is_allowed(
        self,
        relation: Relation | None,
        command_type: str,
        channel_name: str,
        base_date: datetime | None = None,
        *,
        scope: CommandScope,
    ) -> bool:
        METRICS.increment_counter("permission_checks_total")
        synced = await self.sync_relation(relation, base_date or self.clock())
        if synced is None:
            return False

        permission = synced.permissions_for(scope).get(command_type)
        if permission is None:
            return False
        return permission.permits(channel_name)

    async def is_permitted_for_single_use_commands(
        self,
        relation: Relation | None,
        command_type: str,
        channel_name: str,
        base_date: datetime | None = None,
    ) -> bool:
        return await self.is_allowed(
            relation, command_type, channel_name, base_date, scope=CommandScope.SINGLE_USE
        )

    async def is_permitted_for_broadcast_use_commands(
        self,
        relation: Relation | None,
        command_type: str,
        channel_name: str,
        base_date: datetime | None = None,
    ) -> bool:
        return await self.is_allowed(
            relation, command_type, channel_name, base_date, scope=CommandScope.BROADCAST_USE
        )

    async def _evaluate_interaction(
        self,
        relation: Relation,
        action_id: str | None,
        callback_id: str | None,
        channel_name: str,
        base_date: datetime,
    ) -> _InteractionOutcome:
        try:
            synced = await self.sync_relation(relation, base_date)
            command_name = match_command(synced or relation, action_id, callback_id)
            if synced is None:
                return _InteractionOutcome(relation, command_name, allowed=False, failed=True)
            if command_name is None:
                return _InteractionOutcome(synced, None, allowed=False)
            permission = synced.resolve_permission(command_name)
            return _InteractionOutcome(synced, command_name, permission.permits(channel_name))
        except Exception:
            METRICS.record_error()
            log.exception("Interaction check failed for %s", relation.growi_uri)
            return _InteractionOutcome(relation, None, allowed=False, failed=True)

    async def check_permission_for_interactions(
        self,
        relations: Iterable[Relation],
        action_id: str | None,
        callback_id: str | None,
        channel_name: str,
        base_date: datetime | None = None,
    ) -> InteractionPermissions:
        """Split ``relations`` into those allowed to receive this interaction and the rest.

        Each relation is evaluated in its own task. A relation whose permission
        maps register no command matching ``action_id``/``callback_id`` ends up
        in neither collection unless its sync failed, in which case it is
        disallowed. ``command_name`` is taken from the first relation in input
        order that matched a command.
        """

        relations = list(relations)
        base = base_date or self.clock()
        outcomes = await asyncio.gather(
            *(
                self._evaluate_interaction(relation, action_id, callback_id, channel_name, base)
                for relation in relations
            )
        )

        result = InteractionPermissions()
        for source, outcome in zip(relations, outcomes):
            if outcome.command_name is not None:
                result.matched_commands.setdefault(source.growi_uri, outcome.command_name)
                if not result.command_name:
                    result.command_name = outcome.command_name
            if outcome.allowed:
                result.allowed_relations.append(outcome.relation)
            elif outcome.command_name is not None or outcome.failed:
                result.disallowed_growi_urls.add(source.growi_uri)

        METRICS.increment_counter("interactions_allowed_total", len(result.allowed_relations))
        METRICS.increment_counter("interactions_disallowed_total", len(result.disallowed_growi_urls))
        return result

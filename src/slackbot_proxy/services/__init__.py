"""Relation services and their wiring."""

from __future__ import annotations

from datetime import timedelta

from slackbot_proxy.core.tasks import DetachedTasks
from slackbot_proxy.settings import AppSettings, get_settings
from slackbot_proxy.store.relations import RelationStore

from .relations import InteractionPermissions, RelationsService, match_command
from .supported_commands import SupportedCommandsClient, SupportedCommandsError


def build_relations_service(settings: AppSettings | None = None) -> RelationsService:
    """Construct a service from settings with a fresh store, client and task registry."""

    current = settings or get_settings()
    return RelationsService(
        RelationStore(current.relation_db),
        SupportedCommandsClient(timeout=current.request_timeout_for_ptog),
        tasks=DetachedTasks("relations"),
        commands_ttl=timedelta(hours=current.commands_ttl_hours),
        refresh_window=timedelta(hours=current.commands_refresh_window_hours),
    )


__all__ = [
    "InteractionPermissions",
    "RelationsService",
    "SupportedCommandsClient",
    "SupportedCommandsError",
    "build_relations_service",
    "match_command",
]

"""Relation records and the permission values cached on them."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Union


class CommandScope(str, Enum):
    """Which permission map a check reads from."""

    SINGLE_USE = "single"
    BROADCAST_USE = "broadcast"


@dataclass(frozen=True, slots=True)
class Allowed:
    """Command is allowed in every channel."""

    def permits(self, channel_name: str) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Denied:
    """Command is not allowed anywhere."""

    def permits(self, channel_name: str) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class AllowedInChannels:
    """Command is allowed only in the listed channels."""

    channels: frozenset[str]

    def permits(self, channel_name: str) -> bool:
        return channel_name in self.channels


Permission = Union[Allowed, Denied, AllowedInChannels]
PermissionMap = Mapping[str, Permission]

ALLOWED = Allowed()
DENIED = Denied()

# expiry given to relations whose permissions were never fetched
NEVER_SYNCED = datetime.fromtimestamp(0, tz=UTC)


class InvalidPermissionValue(ValueError):
    """Raised when a wire permission value is neither a bool nor a channel list."""

    def __init__(self, command: str, value: Any) -> None:
        super().__init__(f"invalid permission for {command!r}: {value!r}")
        self.command = command
        self.value = value


def parse_permission(command: str, value: Any) -> Permission:
    """Convert a wire value (``true``/``false``/``null``/list) into a permission."""

    if value is True:
        return ALLOWED
    if value is False or value is None:
        return DENIED
    if isinstance(value, (list, tuple, set, frozenset)):
        if not all(isinstance(item, str) for item in value):
            raise InvalidPermissionValue(command, value)
        return AllowedInChannels(frozenset(value))
    raise InvalidPermissionValue(command, value)


def serialize_permission(permission: Permission) -> bool | list[str]:
    if isinstance(permission, AllowedInChannels):
        return sorted(permission.channels)
    return isinstance(permission, Allowed)


def parse_permission_map(raw: Mapping[str, Any] | None) -> dict[str, Permission]:
    """Parse a wire map; ``null`` entries are left out, the same as an absent command."""

    if not raw:
        return {}
    return {str(name): parse_permission(str(name), value) for name, value in raw.items() if value is not None}


def serialize_permission_map(permissions: PermissionMap) -> dict[str, bool | list[str]]:
    return {name: serialize_permission(value) for name, value in permissions.items()}


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class Relation:
    """A paired GROWI instance for one Slack installation.

    Instances are immutable; the synchronizer produces a replacement record via
    :func:`dataclasses.replace` and persists it as a whole.
    """

    installation_id: str
    growi_uri: str
    token_ptog: str
    token_gtop: str
    permissions_for_single_use_commands: PermissionMap = field(default_factory=dict)
    permissions_for_broadcast_use_commands: PermissionMap = field(default_factory=dict)
    expired_at_commands: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    id: int | None = None

    # permission maps are plain dicts
    __hash__ = None  # type: ignore[assignment]

    @property
    def sync_key(self) -> str:
        """Identity used to coalesce concurrent refreshes of this relation."""

        if self.id is not None:
            return f"relation:{self.id}"
        return f"growi:{self.growi_uri}"

    def distance_to_expired_at(self, base_date: datetime) -> timedelta:
        return self.expired_at_commands - base_date

    def distance_in_ms_to_expired_at(self, base_date: datetime) -> int:
        return int(self.distance_to_expired_at(base_date) / timedelta(milliseconds=1))

    def is_supported_command_for_single_use(self, command: str) -> bool:
        return command in self.permissions_for_single_use_commands

    def is_supported_command_for_broadcast_use(self, command: str) -> bool:
        return command in self.permissions_for_broadcast_use_commands

    def permissions_for(self, scope: CommandScope) -> PermissionMap:
        if scope is CommandScope.SINGLE_USE:
            return self.permissions_for_single_use_commands
        return self.permissions_for_broadcast_use_commands

    def command_names(self) -> Iterable[str]:
        """Yield every registered command once, single-use entries first."""

        seen: set[str] = set()
        for name in (*self.permissions_for_single_use_commands, *self.permissions_for_broadcast_use_commands):
            if name in seen:
                continue
            seen.add(name)
            yield name

    def resolve_permission(self, command: str) -> Permission:
        """Return the permission for ``command``; single-use entries take precedence."""

        if command in self.permissions_for_single_use_commands:
            return self.permissions_for_single_use_commands[command]
        return self.permissions_for_broadcast_use_commands.get(command, DENIED)

"""Client for the GROWI supported-commands endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from slackbot_proxy.core.relation import (
    InvalidPermissionValue,
    Permission,
    Relation,
    parse_permission_map,
)

log = logging.getLogger("slackbot_proxy.supported_commands")

SUPPORTED_COMMANDS_PATH = "/_api/v3/slack-integration/supported-commands"
PTOG_TOKEN_HEADER = "x-growi-ptog-tokens"
REQUEST_TIMEOUT_FOR_PTOG = 10.0


class SupportedCommandsError(Exception):
    """Raised when permissions cannot be fetched from a GROWI instance."""

    def __init__(self, reason: str, growi_uri: str, detail: str | None = None) -> None:
        super().__init__(f"{reason}: {growi_uri}" + (f" ({detail})" if detail else ""))
        self.reason = reason
        self.growi_uri = growi_uri
        self.detail = detail


@dataclass(frozen=True, slots=True)
class SupportedCommands:
    permissions_for_broadcast_use_commands: dict[str, Permission]
    permissions_for_single_use_commands: dict[str, Permission]


def supported_commands_url(growi_uri: str) -> str:
    # absolute path replaces whatever path the base uri carries
    return str(httpx.URL(growi_uri).join(SUPPORTED_COMMANDS_PATH))


def parse_supported_commands(body: Any, growi_uri: str) -> SupportedCommands:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise SupportedCommandsError("invalid_payload", growi_uri, "missing data object")

    broadcast = data.get("permissionsForBroadcastUseCommands")
    single = data.get("permissionsForSingleUseCommands")
    for key, value in (
        ("permissionsForBroadcastUseCommands", broadcast),
        ("permissionsForSingleUseCommands", single),
    ):
        if value is not None and not isinstance(value, dict):
            raise SupportedCommandsError("invalid_payload", growi_uri, f"{key} must be an object")

    try:
        return SupportedCommands(
            permissions_for_broadcast_use_commands=parse_permission_map(broadcast),
            permissions_for_single_use_commands=parse_permission_map(single),
        )
    except InvalidPermissionValue as exc:
        raise SupportedCommandsError("invalid_payload", growi_uri, str(exc)) from exc


class SupportedCommandsClient:
    """Fetch command permission maps from a paired GROWI instance."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_FOR_PTOG,
    ) -> None:
        self._http = http
        self._owns_http = http is None
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def fetch(self, relation: Relation) -> SupportedCommands:
        url = supported_commands_url(relation.growi_uri)
        try:
            response = await self._client().get(
                url,
                headers={PTOG_TOKEN_HEADER: relation.token_ptog},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise SupportedCommandsError("timeout", relation.growi_uri, str(exc) or None) from exc
        except httpx.HTTPError as exc:
            raise SupportedCommandsError("transport", relation.growi_uri, str(exc) or None) from exc

        if response.status_code >= 300:
            raise SupportedCommandsError(f"http_{response.status_code}", relation.growi_uri)

        try:
            body = response.json()
        except ValueError as exc:
            raise SupportedCommandsError("invalid_payload", relation.growi_uri, "body is not json") from exc

        commands = parse_supported_commands(body, relation.growi_uri)
        log.debug(
            "Fetched %d single-use and %d broadcast-use permissions from %s",
            len(commands.permissions_for_single_use_commands),
            len(commands.permissions_for_broadcast_use_commands),
            relation.growi_uri,
        )
        return commands

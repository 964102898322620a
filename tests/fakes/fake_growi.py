from __future__ import annotations

import asyncio
from typing import Any

import httpx

from slackbot_proxy.services.supported_commands import SupportedCommandsClient


class FakeGrowi:
    """In-process GROWI supported-commands endpoint backed by httpx.MockTransport."""

    def __init__(
        self,
        *,
        single: dict[str, Any] | None = None,
        broadcast: dict[str, Any] | None = None,
        status_code: int = 200,
        body: Any = None,
        error: type[httpx.HTTPError] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.single = single or {}
        self.broadcast = broadcast or {}
        self.status_code = status_code
        self.body = body
        self.error = error
        self.gate = gate
        self.requests: list[httpx.Request] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error("simulated failure", request=request)
        if self.body is not None:
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(
            self.status_code,
            json={
                "data": {
                    "permissionsForBroadcastUseCommands": self.broadcast,
                    "permissionsForSingleUseCommands": self.single,
                }
            },
        )

    def client(self, *, timeout: float = 10.0) -> SupportedCommandsClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return SupportedCommandsClient(http, timeout=timeout)

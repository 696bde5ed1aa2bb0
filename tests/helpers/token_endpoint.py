"""Fake token endpoint responses for mocked ``aiohttp.ClientSession.get``."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock


def make_response(status: int = 200, body: Any = None) -> MagicMock:
    """Async context manager yielding a fake aiohttp response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def make_hanging_response(gate: asyncio.Event) -> MagicMock:
    """Context manager whose request blocks until ``gate`` is set."""

    async def wait_for_gate() -> MagicMock:
        await gate.wait()
        response = MagicMock()
        response.status = 503
        return response

    context = MagicMock()
    context.__aenter__ = AsyncMock(side_effect=wait_for_gate)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def token_body(
    expires_at: float | None,
    token: str = "token-abcdefghijkl",
    room_name: str = "room-1",
) -> dict[str, Any]:
    """Token endpoint response body."""
    body: dict[str, Any] = {
        "serverUrl": "wss://lk.example.com",
        "roomName": room_name,
        "participantName": "User user_0",
        "participantToken": token,
    }
    if expires_at is not None:
        body["expires_at"] = expires_at
    return body

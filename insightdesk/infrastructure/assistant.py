"""Completion assistant hooks used by tile and contact chat.

The core does not talk to a language model itself. A deployment installs a
client with :func:`configure_assistant_client` during start-up; until then
the no-op client reports the assistant as unavailable so chat turns keep the
user's message and surface the failure.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from insightdesk.domain.errors import AssistantUnavailableError


@dataclass(slots=True)
class AssistantRequest:
    prompt: str
    model: str
    history: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AssistantReply:
    content: str
    model: str | None = None
    total_tokens: int | None = None


class AssistantClient(Protocol):
    """Contract for completion integrations."""

    async def reply(self, request: AssistantRequest) -> AssistantReply:
        """Return a completion or raise :class:`AssistantUnavailableError`."""


class NoOpAssistantClient:
    """Fallback client used when no provider is configured."""

    async def reply(self, request: AssistantRequest) -> AssistantReply:
        raise AssistantUnavailableError("Assistant integration not configured")


_client: AssistantClient = NoOpAssistantClient()


def configure_assistant_client(client: AssistantClient) -> None:
    """Install the assistant used by chat and regeneration."""

    global _client
    _client = client


def get_assistant_client() -> AssistantClient:
    """Return the currently configured assistant client."""

    return _client

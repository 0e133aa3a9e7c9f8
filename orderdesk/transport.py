"""
Chat transport seam.

The fulfillment core never talks to the chat platform directly; it calls a
``ChatTransport``. Production wiring wraps whatever adapter is configured in
``GuardedTransport`` so that every call is time-bounded and every failure
surfaces as ``TransportFailure``.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Dict, Optional

from orderdesk.config import settings
from orderdesk.errors import TransportFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketControls:
    """Interactive affordances attached to a ticket's opening message."""

    claim_label: str = "🎫 Claim"
    claim_enabled: bool = True
    show_resolve: bool = False
    resolve_enabled: bool = False
    show_close: bool = False

    @classmethod
    def unclaimed(cls) -> "TicketControls":
        return cls()

    @classmethod
    def claimed(cls, claimant: str) -> "TicketControls":
        return cls(
            claim_label=f"🎫 Claimed by {claimant}",
            claim_enabled=False,
            show_resolve=True,
            resolve_enabled=True,
        )

    @classmethod
    def resolved(cls, outcome_label: str) -> "TicketControls":
        return cls(
            claim_label=f"🎫 {outcome_label}",
            claim_enabled=False,
            show_resolve=True,
            resolve_enabled=False,
            show_close=True,
        )


class ChatTransport(ABC):
    @abstractmethod
    async def create_channel(self, category_id: str, name: str, content: str, controls: TicketControls) -> str:
        """Create a ticket channel and return an opaque channel reference."""

    @abstractmethod
    async def send_message(self, channel_ref: str, content: str, fields: Optional[Dict[str, str]] = None) -> None:
        ...

    @abstractmethod
    async def delete_channel(self, channel_ref: str) -> None:
        ...

    @abstractmethod
    async def edit_controls(self, channel_ref: str, controls: TicketControls) -> None:
        ...


class GuardedTransport(ChatTransport):
    """Applies a per-call timeout and normalizes errors to TransportFailure."""

    def __init__(self, inner: ChatTransport, timeout: float = settings.TRANSPORT_TIMEOUT_SECONDS):
        self.inner = inner
        self.timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except TransportFailure:
            raise
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"{operation} timed out after {self.timeout}s", operation=operation) from e
        except Exception as e:
            raise TransportFailure(f"{operation} failed: {e}", operation=operation) from e

    async def create_channel(self, category_id, name, content, controls):
        return await self._call("create_channel", self.inner.create_channel(category_id, name, content, controls))

    async def send_message(self, channel_ref, content, fields=None):
        return await self._call("send_message", self.inner.send_message(channel_ref, content, fields))

    async def delete_channel(self, channel_ref):
        return await self._call("delete_channel", self.inner.delete_channel(channel_ref))

    async def edit_controls(self, channel_ref, controls):
        return await self._call("edit_controls", self.inner.edit_controls(channel_ref, controls))


class LoggingTransport(ChatTransport):
    """Stand-in adapter for local runs: logs every call, creates nothing."""

    async def create_channel(self, category_id, name, content, controls):
        channel_ref = f"local-{uuid.uuid4().hex[:12]}"
        logger.info(f"[transport] create #{name} in {category_id} -> {channel_ref}")
        return channel_ref

    async def send_message(self, channel_ref, content, fields=None):
        logger.info(f"[transport] {channel_ref}: {content} {fields or ''}")

    async def delete_channel(self, channel_ref):
        logger.info(f"[transport] delete {channel_ref}")

    async def edit_controls(self, channel_ref, controls):
        logger.info(f"[transport] controls {channel_ref}: {controls}")


async def best_effort(action: str, awaitable: Awaitable) -> bool:
    """Await a non-critical transport step; log and swallow TransportFailure."""
    try:
        await awaitable
        return True
    except TransportFailure as e:
        logger.warning(f"⚠️ {action} failed: {e}")
        return False


async def delete_channel_later(transport: ChatTransport, channel_ref: str, delay: float) -> None:
    """Fire-and-forget deletion, leaving staff time to read the closing message."""
    await asyncio.sleep(delay)
    if await best_effort(f"Deleting ticket channel {channel_ref}", transport.delete_channel(channel_ref)):
        logger.info(f"🗑️ Deleted ticket channel {channel_ref}")


_transport: Optional[ChatTransport] = None


def get_transport() -> ChatTransport:
    global _transport
    if _transport is None:
        _transport = GuardedTransport(LoggingTransport())
    return _transport


def set_transport(transport: ChatTransport) -> None:
    """Install the platform adapter; it is wrapped in a GuardedTransport."""
    global _transport
    _transport = transport if isinstance(transport, GuardedTransport) else GuardedTransport(transport)

from __future__ import annotations

import logging
from typing import Any

import httpx

from facility.services.chat_io.interfaces import ChatContext, DeliverySink, OnFinal, OnPartial

__all__ = ["HttpAgentSink", "AgentHttpError"]

_log = logging.getLogger("facility.chat")


class AgentHttpError(RuntimeError):
    pass


class HttpAgentSink(DeliverySink):
    """
    Delivery sink that POSTs the chat context to an agent endpoint.

    The endpoint answers ``{"text": ..., "tools": [...], "blocks": [...]}``;
    tool notes and blocks are forwarded as partials before the final text.
    """

    def __init__(self, url: str, *, timeout: float = 120.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def deliver(self, ctx: ChatContext, on_partial: OnPartial, on_final: OnFinal) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.post(self.url, json=ctx.to_payload())
            except httpx.HTTPError as exc:
                raise AgentHttpError(f"agent unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise AgentHttpError(f"agent returned HTTP {resp.status_code}")
        try:
            body: Any = resp.json()
        except ValueError as exc:
            raise AgentHttpError("agent returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise AgentHttpError("agent returned an unexpected payload")

        for note in body.get("tools") or []:
            await on_partial("tool", str(note))
        for block in body.get("blocks") or []:
            await on_partial("block", str(block))
        _log.debug("agent %s replied for %s", ctx.agent, ctx.session_key)
        await on_final(str(body.get("text") or ""))

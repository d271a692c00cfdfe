# src/facility/services/chat_io/interfaces.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol


# ---- Inbound chat (browser -> agent) ----
@dataclass(slots=True)
class ChatContext:
    text: str
    user_id: str
    user_name: str
    agent: str
    session_key: str  # "agent:<agent>:<channel>:dm:<user id>"
    channel: str
    timestamp: int  # epoch ms
    account_id: str = "default"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "body": self.text,
            "from": self.user_id,
            "userName": self.user_name,
            "agent": self.agent,
            "sessionKey": self.session_key,
            "provider": self.channel,
            "timestamp": self.timestamp,
            "accountId": self.account_id,
        }


PartialKind = Literal["tool", "block"]

# (kind, text) for intermediate output, text for the final reply
OnPartial = Callable[[PartialKind, str], Awaitable[None]]
OnFinal = Callable[[str], Awaitable[None]]


# ---- Collaborators ----
class DeliverySink(Protocol):
    async def deliver(self, ctx: ChatContext, on_partial: OnPartial, on_final: OnFinal) -> None: ...


HardwareResolver = Callable[[str], Awaitable[Optional[str]]]
DeviceScanner = Callable[[], Awaitable[List[Dict[str, str]]]]


def session_key(agent: str, channel: str, user_id: str) -> str:
    return f"agent:{agent}:{channel}:dm:{user_id}"

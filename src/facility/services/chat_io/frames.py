# src/facility/services/chat_io/frames.py
"""Wire frames exchanged with browser clients over the websocket.

Every frame is a JSON object tagged by ``type``. Inbound frames form a closed
discriminated union; anything outside it is reported to the caller as a
:class:`FrameError` so the protocol can answer with an ``error`` frame.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError, field_validator

__all__ = [
    "FrameError",
    "UnknownFrameType",
    "InboundFrame",
    "INBOUND_FRAME_TYPES",
    "parse_frame",
    # inbound
    "AuthFrame",
    "PassphraseFrame",
    "ChatMessageFrame",
    "AuditQueryFrame",
    "AdminGetUsersFrame",
    "UserUpdates",
    "AdminUpdateUserFrame",
    "AdminAddMacFrame",
    "AdminRemoveMacFrame",
    "AdminAddCurrentDeviceFrame",
    "AdminLanScanFrame",
    "AdminAddUserFrame",
    "AdminRemoveUserFrame",
    # outbound
    "OutboundFrame",
    "WelcomeFrame",
    "AuthResultFrame",
    "PassphrasePromptFrame",
    "PassphraseErrorFrame",
    "ChatEventFrame",
    "AuditResultFrame",
    "AdminResultFrame",
    "AdminUsersResultFrame",
    "AdminLanScanResultFrame",
    "ErrorFrame",
]


class FrameError(ValueError):
    """Inbound payload could not be turned into a frame."""


class UnknownFrameType(FrameError):
    def __init__(self, frame_type: Any) -> None:
        super().__init__(f"Unknown message type: {frame_type}")
        self.frame_type = frame_type


def _as_text(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# ---- Inbound (browser -> server) ----
class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AuthFrame(_Inbound):
    type: Literal["auth"]
    pin: str = ""

    @field_validator("pin", mode="before")
    @classmethod
    def _coerce_pin(cls, value: Any) -> Any:
        value = _as_text(value)
        return "" if value is None else value


class PassphraseFrame(_Inbound):
    type: Literal["passphrase"]
    passphrase: Optional[str] = None


class ChatMessageFrame(_Inbound):
    type: Literal["chat_message"]
    text: Optional[str] = None


class AuditQueryFrame(_Inbound):
    type: Literal["audit_query"]
    identity_filter: Optional[str] = Field(default=None, alias="childId")
    since: Optional[float] = None
    until: Optional[float] = None
    limit: Optional[int] = None


class AdminGetUsersFrame(_Inbound):
    type: Literal["admin_get_users"]


class UserUpdates(_Inbound):
    pin: Optional[str] = None
    passphrase: Optional[str] = None
    mac_required: Optional[StrictBool] = Field(default=None, alias="macRequired")

    @field_validator("pin", mode="before")
    @classmethod
    def _coerce_pin(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("mac_required", mode="before")
    @classmethod
    def _literal_true(cls, value: Any) -> Any:
        # only a JSON true turns the flag on
        return None if value is None else value is True


class AdminUpdateUserFrame(_Inbound):
    type: Literal["admin_update_user"]
    user_id: Optional[str] = Field(default=None, alias="userId")
    updates: UserUpdates = Field(default_factory=UserUpdates)


class AdminAddMacFrame(_Inbound):
    type: Literal["admin_add_mac"]
    user_id: Optional[str] = Field(default=None, alias="userId")
    mac: Optional[str] = None


class AdminRemoveMacFrame(_Inbound):
    type: Literal["admin_remove_mac"]
    user_id: Optional[str] = Field(default=None, alias="userId")
    mac: Optional[str] = None


class AdminAddCurrentDeviceFrame(_Inbound):
    type: Literal["admin_add_current_device"]
    user_id: Optional[str] = Field(default=None, alias="userId")


class AdminLanScanFrame(_Inbound):
    type: Literal["admin_lan_scan"]


class AdminAddUserFrame(_Inbound):
    type: Literal["admin_add_user"]
    user: Optional[Dict[str, Any]] = None


class AdminRemoveUserFrame(_Inbound):
    type: Literal["admin_remove_user"]
    user_id: Optional[str] = Field(default=None, alias="userId")


_INBOUND_MODELS = (
    AuthFrame,
    PassphraseFrame,
    ChatMessageFrame,
    AuditQueryFrame,
    AdminGetUsersFrame,
    AdminUpdateUserFrame,
    AdminAddMacFrame,
    AdminRemoveMacFrame,
    AdminAddCurrentDeviceFrame,
    AdminLanScanFrame,
    AdminAddUserFrame,
    AdminRemoveUserFrame,
)

InboundFrame = Annotated[
    Union[
        AuthFrame,
        PassphraseFrame,
        ChatMessageFrame,
        AuditQueryFrame,
        AdminGetUsersFrame,
        AdminUpdateUserFrame,
        AdminAddMacFrame,
        AdminRemoveMacFrame,
        AdminAddCurrentDeviceFrame,
        AdminLanScanFrame,
        AdminAddUserFrame,
        AdminRemoveUserFrame,
    ],
    Field(discriminator="type"),
]

INBOUND_FRAME_TYPES: frozenset[str] = frozenset(
    get_args(model.model_fields["type"].annotation)[0] for model in _INBOUND_MODELS
)

_INBOUND_ADAPTER: TypeAdapter[Any] = TypeAdapter(InboundFrame)


def parse_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Any:
    """Decode one inbound frame.

    Raises :class:`FrameError` with ``"Invalid JSON"`` or ``"Invalid frame"``
    and :class:`UnknownFrameType` for a well-formed object with an unknown tag.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError:
            raise FrameError("Invalid JSON") from None
    else:
        data = raw
    if not isinstance(data, dict):
        raise FrameError("Invalid frame")
    kind = data.get("type")
    if kind not in INBOUND_FRAME_TYPES:
        raise UnknownFrameType(kind)
    try:
        return _INBOUND_ADAPTER.validate_python(data)
    except ValidationError:
        raise FrameError("Invalid frame") from None


# ---- Outbound (server -> browser) ----
class OutboundFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WelcomeFrame(OutboundFrame):
    type: Literal["welcome"] = "welcome"
    version: str


class AuthResultFrame(OutboundFrame):
    type: Literal["auth_result"] = "auth_result"
    success: bool
    user: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class PassphrasePromptFrame(OutboundFrame):
    type: Literal["passphrase_prompt"] = "passphrase_prompt"
    user_name: str = Field(alias="userName")


class PassphraseErrorFrame(OutboundFrame):
    type: Literal["passphrase_error"] = "passphrase_error"
    error: str


class ChatEventFrame(OutboundFrame):
    type: Literal["chat_event"] = "chat_event"
    event: Literal["thinking", "token", "tool", "done", "agent_push", "error"]
    data: str = ""


class AuditResultFrame(OutboundFrame):
    type: Literal["audit_result"] = "audit_result"
    entries: List[Dict[str, Any]]
    count: int


class AdminResultFrame(OutboundFrame):
    type: Literal["admin_result"] = "admin_result"
    success: bool
    error: Optional[str] = None
    users: Optional[List[Dict[str, Any]]] = None


class AdminUsersResultFrame(OutboundFrame):
    type: Literal["admin_users_result"] = "admin_users_result"
    users: List[Dict[str, Any]]


class AdminLanScanResultFrame(OutboundFrame):
    type: Literal["admin_lan_scan_result"] = "admin_lan_scan_result"
    devices: List[Dict[str, str]]
    current_mac: Optional[str] = Field(default=None, alias="currentMac")

    def dump(self) -> Dict[str, Any]:
        # currentMac is always present, null when unresolved
        return self.model_dump(by_alias=True)


class ErrorFrame(OutboundFrame):
    type: Literal["error"] = "error"
    error: str

"""Identity records and the sanitized views handed to admin clients."""
from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Mapping

from facility.services.auth.enums import ELEVATED_ROLES, Role

__all__ = [
    "Identity",
    "normalize_mac",
    "is_valid_mac",
    "is_valid_pin",
]

_PIN_RE = re.compile(r"^\d{4}$")
_MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")


def normalize_mac(mac: str) -> str:
    return (mac or "").strip().lower().replace("-", ":")


def is_valid_mac(mac: str) -> bool:
    return bool(_MAC_RE.match(mac or ""))


def is_valid_pin(pin: str) -> bool:
    return bool(_PIN_RE.match(pin or ""))


@dataclass(slots=True)
class Identity:
    id: str
    name: str
    pin: str
    agent: str
    role: Role
    mac: list[str] = field(default_factory=list)
    passphrase: str | None = None
    mac_required: bool = False

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Identity":
        """Build a record from a parsed YAML/JSON mapping.

        MACs are normalized, the PIN is coerced to text and ``macRequired`` is
        only true when it is literally ``true``.
        """
        macs = raw.get("mac") or []
        if isinstance(macs, str):
            macs = [macs]
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            pin=str(raw.get("pin") or ""),
            agent=str(raw.get("agent") or ""),
            role=Role(str(raw.get("role") or "child").strip().lower()),
            mac=[normalize_mac(str(m)) for m in macs],
            passphrase=str(raw.get("passphrase")) if raw.get("passphrase") else None,
            mac_required=raw.get("macRequired") is True,
        )

    def to_mapping(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "pin": self.pin,
            "mac": list(self.mac),
            "agent": self.agent,
            "role": self.role.value,
        }
        if self.passphrase:
            entry["passphrase"] = self.passphrase
        if self.mac_required:
            entry["macRequired"] = True
        return entry

    def summary(self) -> dict[str, Any]:
        """Admin panel view; never includes the PIN or passphrase."""
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "macs": list(self.mac),
            "hasPassphrase": bool(self.passphrase),
            "macRequired": self.mac_required,
        }

    def public_profile(self) -> dict[str, Any]:
        return {"name": self.name, "id": self.id, "agent": self.agent, "role": self.role.value}

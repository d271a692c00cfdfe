"""PIN + hardware address decision function.

Rules, in order:

* every identity whose PIN matches is a candidate; none -> ``invalid_pin``;
* an unresolved hardware address (loopback, other subnet) falls back to the
  first candidate with ``pin_only``;
* otherwise the first candidate without ``macRequired`` wins with ``pin_only``,
  and the first one requiring an address that lists the resolved address wins
  with ``pin_and_hardware``;
* anything else is ``hardware_mismatch``.

Declaration order in the directory breaks ties between shared PINs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from .enums import AuthReason

if TYPE_CHECKING:
    from facility.services.users.models import Identity

__all__ = ["AuthResult", "authenticate"]

_log = logging.getLogger("facility.auth")


@dataclass(frozen=True, slots=True)
class AuthResult:
    identity: Optional[Identity]
    reason: AuthReason

    @property
    def ok(self) -> bool:
        return self.identity is not None


def authenticate(identities: Iterable[Identity], pin: str, hardware_address: Optional[str]) -> AuthResult:
    matches = [ident for ident in identities if ident.pin == pin]
    if not matches:
        return AuthResult(None, AuthReason.INVALID_PIN)

    if not hardware_address:
        _log.warning("hardware address unresolved, falling back to PIN-only auth")
        return AuthResult(matches[0], AuthReason.PIN_ONLY)

    for candidate in matches:
        if not candidate.mac_required:
            return AuthResult(candidate, AuthReason.PIN_ONLY)
        if hardware_address in candidate.mac:
            return AuthResult(candidate, AuthReason.PIN_AND_HARDWARE)

    return AuthResult(None, AuthReason.HARDWARE_MISMATCH)

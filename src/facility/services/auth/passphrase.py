from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from facility.config.const import PASSPHRASE_TIMEOUT_SECONDS

from .enums import ELEVATED_ROLES, _StrEnum

if TYPE_CHECKING:
    from facility.services.users.models import Identity

__all__ = ["PassphraseGate", "PassphraseOutcome", "PendingSecondFactor"]


class PassphraseOutcome(_StrEnum):
    ACCEPTED = "accepted"
    INCORRECT = "passphrase_incorrect"
    EXPIRED = "passphrase_expired"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class PendingSecondFactor:
    """A connection that passed the PIN step and still owes a passphrase."""

    candidate: Identity
    hardware_address: Optional[str]
    verified_at: float


class PassphraseGate:
    """Second factor for parent/admin identities that have a passphrase set.

    An identity without a passphrase passes trivially, whatever its role.
    Expiry is checked lazily when the passphrase arrives.
    """

    def __init__(
        self,
        timeout_seconds: float = PASSPHRASE_TIMEOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self._clock = clock

    def required_for(self, identity: Identity) -> bool:
        return identity.role in ELEVATED_ROLES and bool(identity.passphrase)

    def begin(self, identity: Identity, hardware_address: Optional[str]) -> PendingSecondFactor:
        return PendingSecondFactor(candidate=identity, hardware_address=hardware_address, verified_at=self._clock())

    def is_expired(self, pending: PendingSecondFactor) -> bool:
        return (self._clock() - pending.verified_at) > self.timeout_seconds

    def verify(self, pending: PendingSecondFactor, submitted: Optional[str]) -> PassphraseOutcome:
        if self.is_expired(pending):
            return PassphraseOutcome.EXPIRED
        expected = pending.candidate.passphrase
        if not expected:
            return PassphraseOutcome.ACCEPTED
        value = (submitted or "").strip()
        if not value:
            return PassphraseOutcome.MISSING
        if value == expected:
            return PassphraseOutcome.ACCEPTED
        return PassphraseOutcome.INCORRECT

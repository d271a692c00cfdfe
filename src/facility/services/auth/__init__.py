"""PIN, hardware address and passphrase authentication."""
from .enums import ELEVATED_ROLES, AuthReason, ErrorCode, Role
from .errors import DirectoryError, FacilityError
from .engine import AuthResult, authenticate
from .passphrase import PassphraseGate, PassphraseOutcome, PendingSecondFactor
from .rate_limit import RateLimitDecision, RateLimiter

__all__ = [
    "ELEVATED_ROLES",
    "AuthReason",
    "ErrorCode",
    "Role",
    "DirectoryError",
    "FacilityError",
    "AuthResult",
    "authenticate",
    "PassphraseGate",
    "PassphraseOutcome",
    "PendingSecondFactor",
    "RateLimitDecision",
    "RateLimiter",
]

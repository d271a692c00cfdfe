# src/facility/config/const.py
from __future__ import annotations

# Rate limiting (per source address)
RATE_LIMIT_MAX_FAILURES: int = 3
RATE_LIMIT_LOCKOUT_SECONDS: float = 30.0

# Second factor
PASSPHRASE_TIMEOUT_SECONDS: float = 5 * 60

# Audit
AUDIT_RETENTION_MONTHS: int = 6
AUDIT_PREVIEW_CHARS: int = 120
AUDIT_DEFAULT_LIMIT: int = 50
AUDIT_PRUNE_INTERVAL_SECONDS: float = 24 * 60 * 60
DAY_SECONDS: int = 86_400

# Transport / routing
DEFAULT_WS_PORT: int = 18790
DEFAULT_HOST: str = "0.0.0.0"
CHANNEL_ID: str = "facility-web"
PROTOCOL_VERSION: str = "0.1.0"

# websocket close codes
CLOSE_REPLACED: int = 4001
CLOSE_SHUTDOWN: int = 1001

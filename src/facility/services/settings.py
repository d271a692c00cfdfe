from __future__ import annotations
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping
import logging
import os
import yaml

from facility.config.const import (
    AUDIT_RETENTION_MONTHS,
    CHANNEL_ID,
    DEFAULT_HOST,
    DEFAULT_WS_PORT,
    PASSPHRASE_TIMEOUT_SECONDS,
    RATE_LIMIT_LOCKOUT_SECONDS,
    RATE_LIMIT_MAX_FAILURES,
)

_log = logging.getLogger("facility.api")

DEFAULT_BASE_DIR = "~/.facility"
DEFAULT_CONFIG_NAME = "facility.yaml"


@dataclass
class ServerSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_WS_PORT
    # honour X-Forwarded-For only behind a trusted reverse proxy
    trust_forwarded: bool = False


@dataclass
class AuthSettings:
    max_failures: int = RATE_LIMIT_MAX_FAILURES
    lockout_seconds: float = RATE_LIMIT_LOCKOUT_SECONDS
    passphrase_timeout: float = PASSPHRASE_TIMEOUT_SECONDS


@dataclass
class AuditSettings:
    dir: str = f"{DEFAULT_BASE_DIR}/audit"
    retention_months: int = AUDIT_RETENTION_MONTHS
    roles: list[str] = field(default_factory=lambda: ["child"])


@dataclass
class AgentSettings:
    # no url -> chat answers "dispatch API unavailable"
    url: str | None = None
    timeout: float = 120.0


@dataclass
class LoggingSettings:
    level: str = "INFO"
    file: str | None = None


@dataclass
class FacilitySettings:
    users_file: str = f"{DEFAULT_BASE_DIR}/users.yaml"
    channel_id: str = CHANNEL_ID
    account_id: str = "default"
    server: ServerSettings = field(default_factory=ServerSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def users_path(self) -> Path:
        return _expand_path(self.users_file)

    @property
    def audit_path(self) -> Path:
        return _expand_path(self.audit.dir)

    @property
    def log_path(self) -> Path | None:
        return _expand_path(self.logging.file) if self.logging.file else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _expand_path(value: str | os.PathLike[str]) -> Path:
    return Path(os.path.expandvars(str(value))).expanduser()


def _section(cls: type, payload: Any):
    if not isinstance(payload, Mapping):
        return cls()
    known = {k: v for k, v in payload.items() if k in cls.__dataclass_fields__ and v is not None}
    return cls(**known)


def settings_from_dict(data: Mapping[str, Any] | None) -> FacilitySettings:
    data = data or {}
    conf = FacilitySettings(
        server=_section(ServerSettings, data.get("server")),
        auth=_section(AuthSettings, data.get("auth")),
        audit=_section(AuditSettings, data.get("audit")),
        agent=_section(AgentSettings, data.get("agent")),
        logging=_section(LoggingSettings, data.get("logging")),
    )
    for key in ("users_file", "channel_id", "account_id"):
        if data.get(key):
            setattr(conf, key, str(data[key]))
    conf.server.port = int(conf.server.port)
    conf.server.trust_forwarded = conf.server.trust_forwarded is True
    conf.audit.roles = [str(r).strip().lower() for r in (conf.audit.roles or [])]
    return conf


def _apply_env(conf: FacilitySettings, env: Mapping[str, str]) -> None:
    if env.get("FACILITY_USERS_FILE"):
        conf.users_file = env["FACILITY_USERS_FILE"]
    if env.get("FACILITY_AUDIT_DIR"):
        conf.audit.dir = env["FACILITY_AUDIT_DIR"]
    if env.get("FACILITY_HOST"):
        conf.server.host = env["FACILITY_HOST"]
    if env.get("FACILITY_PORT"):
        conf.server.port = int(env["FACILITY_PORT"])
    if env.get("FACILITY_TRUST_FORWARDED"):
        conf.server.trust_forwarded = env["FACILITY_TRUST_FORWARDED"].strip().lower() in ("1", "true", "yes", "on")
    if env.get("FACILITY_AGENT_URL"):
        conf.agent.url = env["FACILITY_AGENT_URL"]
    if env.get("FACILITY_LOG_LEVEL"):
        conf.logging.level = env["FACILITY_LOG_LEVEL"].upper()


def config_path(explicit: str | os.PathLike[str] | None = None, env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    if explicit:
        return _expand_path(explicit)
    if env.get("FACILITY_CONFIG"):
        return _expand_path(env["FACILITY_CONFIG"])
    return _expand_path(f"{DEFAULT_BASE_DIR}/{DEFAULT_CONFIG_NAME}")


def load_settings(
    path: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> FacilitySettings:
    """Read ``facility.yaml`` (if present) and apply ``FACILITY_*`` overrides."""
    env = os.environ if env is None else env
    target = config_path(path, env)
    data: Any = {}
    if target.exists():
        data = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            _log.warning("ignoring %s: top level must be a mapping", target)
            data = {}
    elif path:
        raise FileNotFoundError(target)
    conf = settings_from_dict(data)
    _apply_env(conf, env)
    return conf


def save_settings(conf: FacilitySettings, path: str | os.PathLike[str]) -> Path:
    target = _expand_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.safe_dump(conf.to_dict(), allow_unicode=True, sort_keys=False), encoding="utf-8")
    return target

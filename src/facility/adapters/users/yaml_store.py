# src/facility/adapters/users/yaml_store.py
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List, Sequence

import yaml

from facility.services.users.models import Identity

__all__ = ["load_identities", "YamlUserStore"]

_log = logging.getLogger("facility.users")


def _resolve(path: str | os.PathLike[str]) -> Path:
    return Path(path).expanduser().resolve()


def load_identities(path: str | os.PathLike[str]) -> List[Identity]:
    """Parse ``users.yaml``; a missing or invalid file yields an empty list."""
    target = _resolve(path)
    try:
        raw: Any = yaml.safe_load(target.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        _log.error("failed to load users from %s: %s", target, exc)
        return []

    users = raw.get("users") if isinstance(raw, dict) else None
    if not isinstance(users, list):
        _log.error("invalid users file %s: missing 'users' list", target)
        return []

    identities: List[Identity] = []
    for item in users:
        if not isinstance(item, dict) or not item.get("id"):
            _log.warning("skipping malformed user entry in %s", target)
            continue
        try:
            identities.append(Identity.from_mapping(item))
        except ValueError as exc:
            _log.warning("skipping user %r: %s", item.get("id"), exc)
    _log.info("loaded %d user(s) from %s", len(identities), target)
    return identities


class YamlUserStore:
    """Writes the directory back to ``users.yaml``; usable as the ``persist`` callable."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = _resolve(path)

    def load(self) -> List[Identity]:
        return load_identities(self.path)

    def save(self, identities: Sequence[Identity]) -> bool:
        data = {"users": [ident.to_mapping() for ident in identities]}
        text = yaml.safe_dump(data, allow_unicode=True, sort_keys=False, width=120)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".users-", suffix=".yaml", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            _log.error("failed to save users to %s: %s", self.path, exc)
            return False
        _log.info("users saved to %s", self.path)
        return True

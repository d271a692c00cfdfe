"""Build metadata for facility-chat.

The version comes from the installed distribution metadata; ``FACILITY_BUILD_VERSION``
and ``FACILITY_BUILD_DATE`` override it for packaged builds.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
import os
from typing import Final

_DIST_NAME: Final[str] = "facility-chat"
_FALLBACK_VERSION: Final[str] = "0.1.0"


def _compute_version() -> str:
    explicit = os.getenv("FACILITY_BUILD_VERSION")
    if explicit:
        return explicit
    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        return _FALLBACK_VERSION


def _compute_build_date() -> str:
    return os.getenv("FACILITY_BUILD_DATE") or datetime.now(tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class BuildInfo:
    version: str
    build_date: str


BUILD_INFO: Final[BuildInfo] = BuildInfo(version=_compute_version(), build_date=_compute_build_date())

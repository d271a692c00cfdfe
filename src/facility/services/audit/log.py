"""Append-only audit trail of privileged chat traffic.

Entries are JSON lines in ``audit-YYYY-MM.jsonl`` files, one per local
calendar month. Only a short preview of each message is kept; full transcripts
belong to the agent side.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional

from facility.config.const import (
    AUDIT_DEFAULT_LIMIT,
    AUDIT_PREVIEW_CHARS,
    AUDIT_PRUNE_INTERVAL_SECONDS,
    AUDIT_RETENTION_MONTHS,
    DAY_SECONDS,
)

__all__ = ["AuditEntry", "AuditLog", "month_key", "preview"]

_log = logging.getLogger("facility.audit")

_PREFIX = "audit-"
_SUFFIX = ".jsonl"


def month_key(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0).strftime("%Y-%m")


def preview(text: str, limit: int = AUDIT_PREVIEW_CHARS) -> str:
    return (text or "")[:limit]


@dataclass(frozen=True, slots=True)
class AuditEntry:
    ts: int
    dir: Literal["inbound", "outbound"]
    userId: str
    userName: str
    agent: str
    sessionKey: str
    preview: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AuditEntry":
        return cls(
            ts=int(raw["ts"]),
            dir=raw["dir"],
            userId=str(raw["userId"]),
            userName=str(raw.get("userName", "")),
            agent=str(raw.get("agent", "")),
            sessionKey=str(raw.get("sessionKey", "")),
            preview=str(raw.get("preview", "")),
        )


class AuditLog:
    def __init__(
        self,
        directory: str | Path,
        retention_months: int = AUDIT_RETENTION_MONTHS,
        *,
        clock: Callable[[], float] = time.time,
        prune_interval: float = AUDIT_PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.retention_months = int(retention_months)
        self.prune_interval = float(prune_interval)
        self._clock = clock
        self._write_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self.directory.mkdir(parents=True, exist_ok=True)
        self.prune()

    # ------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="facility-audit-prune")
        _log.info("audit pruning scheduled every %ss (dir=%s)", self.prune_interval, self.directory)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.prune_interval)
                await asyncio.to_thread(self.prune)
        except asyncio.CancelledError:  # pragma: no cover - controlled shutdown
            pass
        except Exception:  # pragma: no cover
            _log.warning("audit prune loop crashed", exc_info=True)

    def close(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    # ---------------------------------------------------------------- writes
    def append(self, entry: AuditEntry) -> None:
        path = self._file_for(entry.ts)
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()

    # ----------------------------------------------------------------- reads
    def query(
        self,
        identity_filter: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = AUDIT_DEFAULT_LIMIT,
    ) -> List[AuditEntry]:
        """Newest-first entries; stops reading older partitions once ``limit`` is met."""
        results: List[AuditEntry] = []
        if limit <= 0:
            return results
        for name in reversed(self._list_files()):
            for entry in reversed(self._read_file(name)):
                if identity_filter and entry.userId != identity_filter:
                    continue
                if since and entry.ts < since:
                    continue
                if until and entry.ts > until:
                    continue
                results.append(entry)
                if len(results) >= limit:
                    return results
        return results

    # ------------------------------------------------------------- retention
    def prune(self, now: Optional[float] = None) -> List[str]:
        """Delete partitions older than the retention window; returns removed names."""
        now_s = self._clock() if now is None else now
        cutoff = month_key((now_s - self.retention_months * 30 * DAY_SECONDS) * 1000)
        removed: List[str] = []
        for name in self._list_files():
            key = name[len(_PREFIX) : -len(_SUFFIX)]
            if key >= cutoff:
                continue
            try:
                (self.directory / name).unlink()
                removed.append(name)
            except OSError:
                pass
        if removed:
            _log.info("pruned %d audit partition(s): %s", len(removed), ", ".join(removed))
        return removed

    # ------------------------------------------------------------- internals
    def _file_for(self, ts_ms: float) -> Path:
        return self.directory / f"{_PREFIX}{month_key(ts_ms)}{_SUFFIX}"

    def _list_files(self) -> List[str]:
        try:
            names = [p.name for p in self.directory.iterdir() if p.is_file()]
        except OSError:
            return []
        return sorted(n for n in names if n.startswith(_PREFIX) and n.endswith(_SUFFIX))

    def _read_file(self, name: str) -> List[AuditEntry]:
        try:
            raw = (self.directory / name).read_text(encoding="utf-8")
        except OSError:
            return []
        entries: List[AuditEntry] = []
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                _log.debug("skipping malformed audit line in %s", name)
        return entries

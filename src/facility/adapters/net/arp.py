"""Hardware address lookups through the kernel ARP table (Linux ``arp`` tool)."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, List, Optional, Sequence

__all__ = ["resolve_hardware_address", "scan_local_devices", "parse_arp_entry", "parse_arp_table"]

_log = logging.getLogger("facility.net")

_MAC_RE = re.compile(r"([0-9a-f]{2}(?::[0-9a-f]{2}){5})", re.IGNORECASE)
_IP_RE = re.compile(r"\(([0-9.]+)\)")

LOOKUP_TIMEOUT_S = 2.0
SCAN_TIMEOUT_S = 5.0


async def _run(argv: Sequence[str], timeout: float) -> Optional[str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        _log.debug("cannot run %s: %s", argv[0], exc)
        return None
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        _log.debug("%s timed out after %ss", " ".join(argv), timeout)
        return None
    if proc.returncode != 0:
        return None
    return out.decode("utf-8", errors="replace")


def parse_arp_entry(output: str) -> Optional[str]:
    # "192.168.1.100  ether  aa:bb:cc:dd:ee:ff  C  eth0"
    match = _MAC_RE.search(output or "")
    return match.group(1).lower() if match else None


def parse_arp_table(output: str) -> List[Dict[str, str]]:
    # "host (192.168.1.50) at aa:bb:cc:dd:ee:ff [ether] on eth0"
    devices: List[Dict[str, str]] = []
    for line in (output or "").splitlines():
        ip = _IP_RE.search(line)
        mac = _MAC_RE.search(line)
        if ip and mac:
            devices.append({"ip": ip.group(1), "mac": mac.group(1).lower()})
    return devices


async def resolve_hardware_address(ip: str) -> Optional[str]:
    if not ip or ip == "unknown":
        return None
    output = await _run(["arp", "-n", ip], LOOKUP_TIMEOUT_S)
    return parse_arp_entry(output) if output else None


async def scan_local_devices() -> List[Dict[str, str]]:
    output = await _run(["arp", "-a"], SCAN_TIMEOUT_S)
    return parse_arp_table(output) if output else []

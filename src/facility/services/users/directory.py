from __future__ import annotations

import asyncio
import logging
from dataclasses import fields, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from facility.services.auth.enums import ELEVATED_ROLES, ErrorCode, Role
from facility.services.auth.errors import DirectoryError

from .models import Identity, is_valid_mac, is_valid_pin, normalize_mac

_log = logging.getLogger("facility.users")

PersistFn = Callable[[Sequence[Identity]], bool]


class IdentityDirectory:
    """
    Shared in-memory identity list.

    Reads are lock-free; every administrative mutation runs under one
    ``asyncio.Lock``. A change is prepared on copies, the copied list is saved,
    and only a successful save swaps the change into the live records. Readers
    therefore never see an unsaved change; a failed save raises
    ``persist_failure`` and leaves memory untouched.
    """

    def __init__(self, identities: Iterable[Identity] = (), *, persist: Optional[PersistFn] = None) -> None:
        self._identities: List[Identity] = list(identities)
        self._persist = persist
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ reads
    def all(self) -> Tuple[Identity, ...]:
        return tuple(self._identities)

    def __len__(self) -> int:
        return len(self._identities)

    def get(self, user_id: str) -> Optional[Identity]:
        for ident in self._identities:
            if ident.id == user_id:
                return ident
        return None

    def summaries(self) -> List[Dict[str, Any]]:
        return [ident.summary() for ident in self._identities]

    def _require(self, user_id: Optional[str]) -> Identity:
        target = self.get(user_id) if user_id else None
        if target is None:
            raise DirectoryError("User not found.", error_code=ErrorCode.NOT_FOUND)
        return target

    # -------------------------------------------------------------- mutations
    async def update_user(
        self,
        user_id: str,
        *,
        pin: Optional[str] = None,
        passphrase: Optional[str] = None,
        mac_required: Optional[bool] = None,
    ) -> None:
        async with self._lock:
            target = self._require(user_id)
            if pin is not None and not is_valid_pin(str(pin)):
                raise DirectoryError("PIN must be exactly 4 digits.")
            if passphrase is not None and target.role not in ELEVATED_ROLES:
                raise DirectoryError("Passphrases are only for parent/admin users.")

            staged = _copy(target)
            if pin is not None:
                staged.pin = str(pin)
            if passphrase is not None:
                # empty string clears the passphrase
                staged.passphrase = passphrase or None
            if mac_required is not None:
                staged.mac_required = mac_required is True
            await self._save_or_raise(self._with(target, staged), "Failed to save changes.")
            _apply(target, staged)
            _log.info("user updated: %s (%s)", target.name, target.id)

    async def add_mac(self, user_id: str, mac: Optional[str]) -> bool:
        """Attach a hardware address; returns False when it was already listed."""
        async with self._lock:
            target = self._require(user_id)
            value = normalize_mac(mac or "")
            if not is_valid_mac(value):
                raise DirectoryError("Invalid MAC address format.")
            if value in target.mac:
                return False
            staged = _copy(target)
            staged.mac.append(value)
            await self._save_or_raise(self._with(target, staged))
            _apply(target, staged)
            _log.info("mac %s added to %s", value, target.id)
            return True

    async def remove_mac(self, user_id: str, mac: Optional[str]) -> bool:
        async with self._lock:
            target = self._require(user_id)
            value = normalize_mac(mac or "")
            if value not in target.mac:
                return False
            staged = _copy(target)
            staged.mac.remove(value)
            await self._save_or_raise(self._with(target, staged))
            _apply(target, staged)
            _log.info("mac %s removed from %s", value, target.id)
            return True

    async def add_user(self, payload: Mapping[str, Any]) -> Identity:
        async with self._lock:
            required = ("id", "name", "pin", "agent", "role")
            if any(not payload.get(key) for key in required):
                raise DirectoryError("Missing required fields: id, name, pin, agent, role.")
            pin = str(payload["pin"])
            if not is_valid_pin(pin):
                raise DirectoryError("PIN must be exactly 4 digits.")
            try:
                role = Role(str(payload["role"]))
            except ValueError:
                raise DirectoryError("Role must be admin, parent, or child.") from None
            user_id = str(payload["id"])
            if self.get(user_id) is not None:
                raise DirectoryError("A user with that ID already exists.")

            entry = Identity(
                id=user_id,
                name=str(payload["name"]),
                pin=pin,
                agent=str(payload["agent"]),
                role=role,
            )
            if payload.get("passphrase") and role in ELEVATED_ROLES:
                entry.passphrase = str(payload["passphrase"])

            await self._save_or_raise([*self._identities, entry])
            self._identities.append(entry)
            _log.info("user added: %s (%s)", entry.name, entry.id)
            return entry

    async def remove_user(self, user_id: Optional[str], *, acting_id: str) -> Identity:
        async with self._lock:
            if not user_id:
                raise DirectoryError("Missing userId.")
            if user_id == acting_id:
                raise DirectoryError("Cannot remove your own account.")
            target = self._require(user_id)
            await self._save_or_raise([ident for ident in self._identities if ident is not target])
            self._identities.remove(target)
            _log.info("user removed: %s (%s)", target.name, target.id)
            return target

    # ---------------------------------------------------------------- helpers
    def _with(self, target: Identity, staged: Identity) -> List[Identity]:
        return [staged if ident is target else ident for ident in self._identities]

    async def _save_or_raise(self, candidate: List[Identity], message: str = "Failed to save.") -> None:
        # the live list is only touched by the caller after this returns
        if await self._save(candidate):
            return
        raise DirectoryError(message, error_code=ErrorCode.PERSIST_FAILURE)

    async def _save(self, candidate: List[Identity]) -> bool:
        if self._persist is None:
            _log.debug("no persistence configured; keeping changes in memory")
            return True
        try:
            return bool(await asyncio.to_thread(self._persist, candidate))
        except Exception:
            _log.error("user directory save failed", exc_info=True)
            return False


def _copy(ident: Identity) -> Identity:
    return replace(ident, mac=list(ident.mac))


def _apply(target: Identity, staged: Identity) -> None:
    # in place: live sessions hold references to ``target``
    for f in fields(Identity):
        setattr(target, f.name, getattr(staged, f.name))

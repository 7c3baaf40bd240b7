"""Mandate registry client interface and a file-backed stand-in."""

from __future__ import annotations

import fcntl
import json
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .errors import RegistryError
from .mandate import normalize_address, normalize_hex32
from .storage import DEFAULT_DATA_DIR, ensure_private_dir, ensure_private_file


DEFAULT_REGISTRY_STATE_PATH = DEFAULT_DATA_DIR / "registry_state.json"


@dataclass
class RegisteredMandate:
    mandate_hash: str
    agent: str
    max_amount: int
    expiry: int
    registered_at: int
    revoked: bool

    def is_active(self, now: int) -> bool:
        return not self.revoked and now <= self.expiry


class MandateRegistryClient(Protocol):
    def register_mandate(self, mandate_hash: str, agent: str, max_amount: int, expiry: int, sender: str) -> str: ...

    def verify_mandate(self, mandate_hash: str) -> bool: ...

    def revoke_mandate(self, mandate_hash: str, sender: str) -> str: ...


class LocalMandateRegistry:
    """File-backed stand-in for the on-chain mandate registry.

    Enforces the contract's rules: only the owner registers or revokes,
    a hash registers once, and a mandate verifies while it is neither
    revoked nor expired.
    """

    def __init__(
        self,
        owner: str,
        path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path or DEFAULT_REGISTRY_STATE_PATH
        self._clock = clock
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".registry.lock"
        ensure_private_file(self._lock_path)
        normalized_owner = normalize_address(owner)
        with self._lock():
            if not self.path.exists():
                self._save_state({"owner": normalized_owner, "mandates": {}})
        self.owner = normalize_address(self._load_state()["owner"])

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _save_state(self, state: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        ensure_private_file(self.path)

    def _require_owner(self, state: dict, sender: str) -> None:
        if normalize_address(sender) != normalize_address(state["owner"]):
            raise RegistryError("Only the registry owner can do this")

    def register_mandate(
        self,
        mandate_hash: str,
        agent: str,
        max_amount: int,
        expiry: int,
        sender: str,
    ) -> str:
        normalized_hash = normalize_hex32(mandate_hash, "mandate_hash")
        if int(max_amount) <= 0:
            raise RegistryError("max_amount must be > 0")

        with self._lock():
            state = self._load_state()
            self._require_owner(state, sender)
            mandates = state.setdefault("mandates", {})
            if normalized_hash in mandates:
                raise RegistryError(f"Mandate already exists: {normalized_hash}")
            mandates[normalized_hash] = {
                "agent": normalize_address(agent),
                "max_amount": str(int(max_amount)),
                "expiry": int(expiry),
                "registered_at": int(self._clock()),
                "revoked": False,
            }
            self._save_state(state)

        return _pseudo_tx_hash("register", normalized_hash)

    def revoke_mandate(self, mandate_hash: str, sender: str) -> str:
        normalized_hash = normalize_hex32(mandate_hash, "mandate_hash")

        with self._lock():
            state = self._load_state()
            self._require_owner(state, sender)
            record = state.setdefault("mandates", {}).get(normalized_hash)
            if record is None:
                raise RegistryError(f"Mandate not found: {normalized_hash}")
            if record.get("revoked"):
                raise RegistryError(f"Mandate already revoked: {normalized_hash}")
            record["revoked"] = True
            self._save_state(state)

        return _pseudo_tx_hash("revoke", normalized_hash)

    def get_mandate(self, mandate_hash: str) -> Optional[RegisteredMandate]:
        normalized_hash = normalize_hex32(mandate_hash, "mandate_hash")
        with self._lock():
            record = self._load_state().get("mandates", {}).get(normalized_hash)
        if record is None:
            return None
        return RegisteredMandate(
            mandate_hash=normalized_hash,
            agent=record["agent"],
            max_amount=int(record["max_amount"]),
            expiry=int(record["expiry"]),
            registered_at=int(record["registered_at"]),
            revoked=bool(record["revoked"]),
        )

    def verify_mandate(self, mandate_hash: str) -> bool:
        record = self.get_mandate(mandate_hash)
        if record is None:
            return False
        return record.is_active(int(self._clock()))


def _pseudo_tx_hash(prefix: str, mandate_hash: str) -> str:
    seed = f"{prefix}:{mandate_hash}:{int(time.time() * 1000)}".encode("utf-8")
    digest = os.urandom(8).hex() + seed.hex()[:48]
    return "0x" + digest[:64].ljust(64, "0")

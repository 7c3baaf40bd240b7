"""
Persistent per-user settings: authorization flag, PIN, voice profile, wallet.

PINs are stored as salted scrypt hashes. The raw PIN never leaves
``set_pin``/``validate_pin``.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import PinError
from .mandate import normalize_address
from .storage import DEFAULT_DATA_DIR, ensure_private_dir

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS_PATH = DEFAULT_DATA_DIR / "sentinel.db"

PIN_RE = re.compile(r"^\d{4}$")
WEAK_PINS = frozenset({"0000", "1111", "1234", "4321", "9999", "1212", "2580"})

_SCRYPT_N = 2 ** 14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_BYTES = 16
_KEY_BYTES = 32


@dataclass
class UserRecord:
    user_id: str
    is_authorized: bool
    voice_enrolled: bool
    voice_profile_hash: Optional[str]
    wallet_address: Optional[str]
    has_pin: bool
    created_at: str
    updated_at: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_KEY_BYTES, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def hash_pin(pin: str, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(_SALT_BYTES)
    derived = _kdf(salt).derive(pin.encode("utf-8"))
    return f"scrypt${salt.hex()}${derived.hex()}"


def check_pin(pin: str, stored: str) -> bool:
    try:
        scheme, salt_hex, hash_hex = stored.split("$")
    except ValueError:
        return False
    if scheme != "scrypt":
        return False
    try:
        _kdf(bytes.fromhex(salt_hex)).verify(pin.encode("utf-8"), bytes.fromhex(hash_hex))
    except (InvalidKey, ValueError):
        return False
    return True


def validate_pin_format(pin: str, reject_weak: bool = False) -> None:
    if not PIN_RE.match(pin or ""):
        raise PinError("PIN must be exactly 4 digits")
    if reject_weak and pin in WEAK_PINS:
        raise PinError("PIN is too easy to guess; choose another")


class UserSettings:
    """SQLite-backed user settings table."""

    def __init__(self, db_path: Optional[Path] = None, reject_weak_pins: bool = False):
        self.db_path = db_path or DEFAULT_SETTINGS_PATH
        self.reject_weak_pins = reject_weak_pins
        ensure_private_dir(self.db_path.parent)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    is_authorized INTEGER NOT NULL DEFAULT 0,
                    voice_enrolled INTEGER NOT NULL DEFAULT 0,
                    voice_profile_hash TEXT,
                    wallet_address TEXT,
                    pin_hash TEXT,
                    pin_attempts INTEGER NOT NULL DEFAULT 0,
                    pin_lockout_until REAL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(user_settings)")}
            if "pin_attempts" not in columns:
                conn.execute("ALTER TABLE user_settings ADD COLUMN pin_attempts INTEGER NOT NULL DEFAULT 0")
            if "pin_lockout_until" not in columns:
                conn.execute("ALTER TABLE user_settings ADD COLUMN pin_lockout_until REAL")

    def _ensure_row(self, conn: sqlite3.Connection, user_id: str) -> None:
        now = _now_iso()
        conn.execute(
            """
            INSERT OR IGNORE INTO user_settings (user_id, created_at, updated_at)
            VALUES (?, ?, ?)
            """,
            (str(user_id), now, now),
        )

    def _update(self, user_id: str, assignments: str, params: tuple) -> None:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._ensure_row(conn, user_id)
                conn.execute(
                    f"UPDATE user_settings SET {assignments}, updated_at = ? WHERE user_id = ?",
                    params + (_now_iso(), str(user_id)),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _row(self, user_id: str) -> sqlite3.Row:
        with closing(self._connect()) as conn:
            self._ensure_row(conn, user_id)
            return conn.execute(
                "SELECT * FROM user_settings WHERE user_id = ?", (str(user_id),)
            ).fetchone()

    def get_user(self, user_id: str) -> UserRecord:
        row = self._row(user_id)
        return UserRecord(
            user_id=row["user_id"],
            is_authorized=bool(row["is_authorized"]),
            voice_enrolled=bool(row["voice_enrolled"]),
            voice_profile_hash=row["voice_profile_hash"],
            wallet_address=row["wallet_address"],
            has_pin=bool(row["pin_hash"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # PIN

    def has_pin(self, user_id: str) -> bool:
        return bool(self._row(user_id)["pin_hash"])

    def set_pin(self, user_id: str, pin: str) -> None:
        """Set a first PIN. Refuses when one exists; use change_pin."""
        validate_pin_format(pin, self.reject_weak_pins)
        if self.has_pin(user_id):
            raise PinError("A PIN is already set. Use changepin to replace it")
        self._update(user_id, "pin_hash = ?", (hash_pin(pin),))
        logger.info("PIN set for user %s", user_id)

    def change_pin(self, user_id: str, old_pin: str, new_pin: str) -> None:
        validate_pin_format(new_pin, self.reject_weak_pins)
        if not self.has_pin(user_id):
            raise PinError("No PIN set. Use setpin first")
        if not self.validate_pin(user_id, old_pin):
            raise PinError("Old PIN is incorrect")
        self._update(user_id, "pin_hash = ?", (hash_pin(new_pin),))
        logger.info("PIN changed for user %s", user_id)

    def validate_pin(self, user_id: str, pin: str) -> bool:
        stored = self._row(user_id)["pin_hash"]
        if not stored:
            return False
        return check_pin(pin, stored)

    def pin_lockout(self, user_id: str) -> tuple[int, Optional[float]]:
        """Failed attempts and lockout deadline, shared by every process."""
        row = self._row(user_id)
        return int(row["pin_attempts"] or 0), row["pin_lockout_until"]

    def record_pin_lockout(self, user_id: str, attempts: int, lockout_until: Optional[float]) -> None:
        self._update(user_id, "pin_attempts = ?, pin_lockout_until = ?", (int(attempts), lockout_until))

    # Authorization, voice, wallet

    def set_authorized(self, user_id: str, authorized: bool) -> None:
        self._update(user_id, "is_authorized = ?", (1 if authorized else 0,))

    def is_authorized(self, user_id: str) -> bool:
        return bool(self._row(user_id)["is_authorized"])

    def enroll_voice(self, user_id: str, profile_hash: str) -> None:
        self._update(user_id, "voice_enrolled = 1, voice_profile_hash = ?", (profile_hash,))

    def clear_voice(self, user_id: str) -> None:
        self._update(user_id, "voice_enrolled = 0, voice_profile_hash = NULL", ())

    def is_voice_enrolled(self, user_id: str) -> bool:
        return bool(self._row(user_id)["voice_enrolled"])

    def set_wallet(self, user_id: str, wallet_address: str) -> None:
        self._update(user_id, "wallet_address = ?", (normalize_address(wallet_address),))

    def clear_wallet(self, user_id: str) -> None:
        self._update(user_id, "wallet_address = NULL", ())

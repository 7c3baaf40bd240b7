"""
Append-only audit ledger for every pipeline stage.

Each event's fingerprint is an HMAC over the previous fingerprint and the
canonical event payload, so the chain is deterministic for a given
history and any edit to a stored row is detected by ``verify_chain``.

Two interchangeable stores sit behind the ledger: embedded SQLite
(``SqliteAuditStore``) and any SQLAlchemy URL (``SqlAlchemyAuditStore``),
typically PostgreSQL. Callers only ever talk to ``AuditLedger``.
"""

from __future__ import annotations

import csv
import hashlib
import hmac
import json
import logging
import sqlite3
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.pool import QueuePool

from .mandate import canonical_json_bytes
from .storage import DEFAULT_DATA_DIR, ensure_private_dir, ensure_private_file, load_or_create_key

logger = logging.getLogger(__name__)


DEFAULT_AUDIT_DB_PATH = DEFAULT_DATA_DIR / "sentinel.db"
DEFAULT_AGENT_ID = "Sentinel_Agent_01"
COLUMNS = ("id", "timestamp", "event_type", "agent_id", "action", "status", "metadata", "hash")
CSV_COLUMNS = ("id", "timestamp", "event_type", "agent_id", "action", "status", "hash")
DEFAULT_CSV_ROWS = 50


class EventKind(str, Enum):
    INTENT_RESOLUTION = "INTENT_RESOLUTION"
    NEGOTIATION = "NEGOTIATION"
    POLICY_AUDIT = "POLICY_AUDIT"
    MANDATE_CREATED = "MANDATE_CREATED"
    APPROVAL = "APPROVAL"
    PIN_VERIFICATION = "PIN_VERIFICATION"
    MULTISIG = "MULTISIG"
    LIVENESS = "LIVENESS"
    SETTLEMENT = "SETTLEMENT"
    ESCROW = "ESCROW"
    SETTINGS = "SETTINGS"


class EventStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class AuditEvent:
    """A single ledger row."""

    id: int
    timestamp: str
    kind: str
    agent_id: str
    action: str
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "event_type": self.kind,
            "agent_id": self.agent_id,
            "action": self.action,
            "status": self.status,
            "metadata": json.dumps(self.metadata, sort_keys=True),
            "hash": self.fingerprint,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AuditEvent":
        return cls(
            id=int(row["id"]),
            timestamp=row["timestamp"],
            kind=row["event_type"],
            agent_id=row["agent_id"],
            action=row["action"],
            status=row["status"],
            metadata=json.loads(row["metadata"] or "{}"),
            fingerprint=row["hash"],
        )


class AuditStore(Protocol):
    def insert(self, row: dict[str, Any]) -> int: ...

    def fetch(self, limit: Optional[int] = None, newest_first: bool = True) -> list[dict[str, Any]]: ...


class SqliteAuditStore:
    """Embedded file-backed store."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or DEFAULT_AUDIT_DB_PATH
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    hash TEXT NOT NULL
                )
                """
            )

    def insert(self, row: dict[str, Any]) -> int:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_logs (timestamp, event_type, agent_id, action, status, metadata, hash)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["timestamp"],
                    row["event_type"],
                    row["agent_id"],
                    row["action"],
                    row["status"],
                    row["metadata"],
                    row["hash"],
                ),
            )
            return int(cursor.lastrowid)

    def fetch(self, limit: Optional[int] = None, newest_first: bool = True) -> list[dict[str, Any]]:
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT * FROM audit_logs ORDER BY id {order}"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with closing(self._connect()) as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]


_metadata = MetaData()
audit_logs_table = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(40), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("agent_id", String(128), nullable=False),
    Column("action", Text, nullable=False),
    Column("status", String(32), nullable=False),
    Column("metadata", Text, nullable=False),
    Column("hash", String(64), nullable=False),
)


def create_audit_engine(database_url: str):
    """Build an engine the same way for every relational backend."""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
    )


class SqlAlchemyAuditStore:
    """Networked relational store (PostgreSQL in production)."""

    def __init__(self, database_url: str):
        self.engine = create_audit_engine(database_url)
        _metadata.create_all(self.engine, tables=[audit_logs_table])

    def insert(self, row: dict[str, Any]) -> int:
        values = {k: row[k] for k in COLUMNS if k != "id"}
        with self.engine.begin() as conn:
            result = conn.execute(audit_logs_table.insert().values(**values))
            return int(result.inserted_primary_key[0])

    def fetch(self, limit: Optional[int] = None, newest_first: bool = True) -> list[dict[str, Any]]:
        id_col = audit_logs_table.c.id
        stmt = select(audit_logs_table).order_by(id_col.desc() if newest_first else id_col.asc())
        if limit is not None:
            stmt = stmt.limit(int(limit))
        with self.engine.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt)]

    def close(self) -> None:
        self.engine.dispose()


def open_audit_store(database_url: Optional[str] = None, db_path: Optional[Path] = None) -> AuditStore:
    """Pick the relational store when a URL is configured, else embedded SQLite."""
    if database_url:
        logger.info("Audit ledger using relational store: %s", database_url.split("://")[0])
        return SqlAlchemyAuditStore(database_url)
    return SqliteAuditStore(db_path)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> float:
    return datetime.fromisoformat(value).timestamp()


class AuditLedger:
    """Tamper-evident append-only event log."""

    def __init__(
        self,
        store: AuditStore,
        hmac_key: bytes,
        agent_id: str = DEFAULT_AGENT_ID,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.agent_id = agent_id
        self._hmac_key = hmac_key
        self._clock = clock
        self._lock = threading.Lock()
        last = store.fetch(limit=1, newest_first=True)
        self._last_hash = last[0]["hash"] if last else ""
        self._last_ts = _parse_iso(last[0]["timestamp"]) if last else 0.0

    def _fingerprint(self, payload: dict[str, Any], prev_hash: str) -> str:
        canonical = canonical_json_bytes(payload).decode("utf-8")
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    @staticmethod
    def _payload(row: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        return {
            "timestamp": row["timestamp"],
            "event_type": row["event_type"],
            "agent_id": row["agent_id"],
            "action": row["action"],
            "status": row["status"],
            "metadata": metadata,
        }

    def append(
        self,
        kind: EventKind | str,
        action: str,
        status: EventStatus | str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        # Round-trip through canonical JSON so the stored and hashed forms agree.
        meta = json.loads(canonical_json_bytes(metadata or {}))
        with self._lock:
            ts = max(self._clock(), self._last_ts)
            row = {
                "timestamp": _iso(ts),
                "event_type": kind.value if isinstance(kind, Enum) else str(kind),
                "agent_id": self.agent_id,
                "action": action,
                "status": status.value if isinstance(status, Enum) else str(status),
            }
            fingerprint = self._fingerprint(self._payload(row, meta), self._last_hash)
            row["metadata"] = json.dumps(meta, sort_keys=True)
            row["hash"] = fingerprint
            event_id = self.store.insert(row)
            self._last_hash = fingerprint
            self._last_ts = ts

        return AuditEvent(
            id=event_id,
            timestamp=row["timestamp"],
            kind=row["event_type"],
            agent_id=self.agent_id,
            action=action,
            status=row["status"],
            metadata=meta,
            fingerprint=fingerprint,
        )

    def query(self, limit: int = 20) -> list[AuditEvent]:
        """Most recent events, newest first."""
        return [AuditEvent.from_row(r) for r in self.store.fetch(limit=limit, newest_first=True)]

    def export(self) -> list[dict[str, Any]]:
        """All rows, oldest first, in table column order."""
        return [{k: r[k] for k in COLUMNS} for r in self.store.fetch(newest_first=False)]

    def export_csv(self, path: Path, limit: int = DEFAULT_CSV_ROWS) -> Path:
        rows = list(reversed(self.store.fetch(limit=limit, newest_first=True)))
        ensure_private_dir(path.parent)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_COLUMNS)
            for r in rows:
                writer.writerow([r[k] for k in CSV_COLUMNS])
        ensure_private_file(path)
        return path

    def verify_chain(self) -> int:
        """Walk the whole ledger; return the event count or raise on tampering."""
        expected_prev = ""
        count = 0
        for r in self.store.fetch(newest_first=False):
            metadata = json.loads(r["metadata"] or "{}")
            expected = self._fingerprint(self._payload(r, metadata), expected_prev)
            if not hmac.compare_digest(expected, r["hash"] or ""):
                raise RuntimeError(f"Audit chain broken: event {r['id']} hash mismatch")
            expected_prev = r["hash"]
            count += 1
        return count

    def summary(self) -> dict[str, Any]:
        events = self.store.fetch(newest_first=False)
        by_kind: dict[str, int] = {}
        failures = 0
        for r in events:
            by_kind[r["event_type"]] = by_kind.get(r["event_type"], 0) + 1
            if r["status"] in {EventStatus.FAILED.value, EventStatus.BLOCKED.value}:
                failures += 1
        return {
            "total_events": len(events),
            "by_kind": by_kind,
            "failures": failures,
        }


def resolve_hmac_key(explicit: Optional[str], key_path: Path) -> bytes:
    if explicit:
        return explicit.encode()
    return load_or_create_key(key_path)

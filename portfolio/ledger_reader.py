"""
ledger_reader.py — Read-only access to a user's trade ledger and balances.

The ledger itself is owned by the trading/order subsystem. This module only
reads it through the LedgerStore contract and turns loosely-typed rows into
validated, immutable LedgerRecord objects so nothing downstream has to poke
at raw dicts.

Two views are served from the same records:
  - valuation view: status == "success" only (default)
  - analytics view: every status, so win rate can count failures

SQLiteLedgerStore is a concrete store (in-memory by default) used for local
runs and tests.

Usage:
    store = SQLiteLedgerStore()
    store.add_trade("user-1", kind="sell", usd_value=1000.0,
                    executed_at="2026-01-05T10:15:00+00:00")
    store.set_balance("user-1", "ETH", balance=1.5, balance_usd=5000.0)

    reader = LedgerReader(store)
    records  = reader.fetch("user-1", start, end)
    balances = reader.current_balances("user-1")
"""

from __future__ import annotations

import math
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

VALID_KINDS = frozenset({"buy", "sell"})
VALID_STATUSES = frozenset({"pending", "success", "failed"})
SETTLED_STATUS = "success"

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL
)
"""

_CREATE_TRADES = """
CREATE TABLE IF NOT EXISTS trades (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    agent_id    TEXT,
    agent_name  TEXT,
    kind        TEXT NOT NULL,
    from_asset  TEXT NOT NULL,
    to_asset    TEXT NOT NULL,
    amount      REAL NOT NULL,
    usd_value   REAL NOT NULL,
    executed_at TEXT NOT NULL,
    status      TEXT NOT NULL DEFAULT 'pending'
)
"""

_CREATE_BALANCES = """
CREATE TABLE IF NOT EXISTS balances (
    user_id     TEXT NOT NULL,
    asset       TEXT NOT NULL,
    balance     REAL NOT NULL,
    balance_usd REAL NOT NULL,
    profit_loss REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, asset)
)
"""

_CREATE_AGENTS = """
CREATE TABLE IF NOT EXISTS agents (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    strategy    TEXT NOT NULL DEFAULT '',
    status      TEXT NOT NULL DEFAULT 'active'
)
"""

_CREATE_IDX_USER_TS = (
    "CREATE INDEX IF NOT EXISTS idx_trades_user_ts ON trades(user_id, executed_at)"
)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class LedgerError(Exception):
    """Base exception for ledger access errors."""


class LedgerNotFound(LedgerError):
    """Raised when the store holds no ledger for the requested user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No ledger for user {user_id!r}")
        self.user_id = user_id


class LedgerValidationError(LedgerError):
    """Raised when a stored row cannot be turned into a valid record."""


# ─── Helpers ──────────────────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime:
    """Coerce an ISO-8601 string or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise LedgerValidationError(f"bad timestamp {value!r}") from exc
    else:
        raise LedgerValidationError(f"bad timestamp {value!r}")
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LedgerRecord:
    """A single executed (or attempted) trade as seen by the analytics core."""
    id: str
    user_id: str
    kind: str                       # "buy" | "sell"
    from_asset: str
    to_asset: str
    amount: float
    usd_value: float
    executed_at: datetime
    status: str                     # "pending" | "success" | "failed"
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status == SETTLED_STATUS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "kind": self.kind,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "amount": self.amount,
            "usd_value": self.usd_value,
            "executed_at": self.executed_at.isoformat(),
            "status": self.status,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerRecord":
        """Validate a raw store row and build a record from it."""
        try:
            kind = str(row["kind"]).lower()
            status = str(row["status"]).lower()
            usd_value = float(row["usd_value"])
            amount = float(row["amount"])
            record_id = str(row["id"])
            user_id = str(row["user_id"])
            executed_at = row["executed_at"]
        except KeyError as exc:
            raise LedgerValidationError(f"missing field {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise LedgerValidationError(f"malformed trade row: {exc}") from exc

        if kind not in VALID_KINDS:
            raise LedgerValidationError(
                f"kind must be one of {sorted(VALID_KINDS)}, got {kind!r}"
            )
        if status not in VALID_STATUSES:
            raise LedgerValidationError(
                f"status must be one of {sorted(VALID_STATUSES)}, got {status!r}"
            )
        if not (math.isfinite(usd_value) and math.isfinite(amount)):
            raise LedgerValidationError(
                f"usd_value and amount must be finite, got {usd_value} and {amount}"
            )
        if usd_value < 0:
            raise LedgerValidationError(f"usd_value must be >= 0, got {usd_value}")

        return cls(
            id=record_id,
            user_id=user_id,
            kind=kind,
            from_asset=str(row.get("from_asset") or ""),
            to_asset=str(row.get("to_asset") or ""),
            amount=amount,
            usd_value=usd_value,
            executed_at=parse_timestamp(executed_at),
            status=status,
            agent_id=row.get("agent_id"),
            agent_name=row.get("agent_name"),
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    """Current holding of one asset."""
    asset: str
    balance: float
    balance_usd: float
    profit_loss: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "balance": self.balance,
            "balance_usd": self.balance_usd,
            "profit_loss": self.profit_loss,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BalanceSnapshot":
        try:
            snapshot = cls(
                asset=str(row["asset"]),
                balance=float(row["balance"]),
                balance_usd=float(row["balance_usd"]),
                profit_loss=float(row.get("profit_loss") or 0.0),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerValidationError(f"malformed balance row: {exc}") from exc
        if not all(math.isfinite(v) for v in (snapshot.balance, snapshot.balance_usd, snapshot.profit_loss)):
            raise LedgerValidationError(f"non-finite balance for {snapshot.asset}")
        return snapshot


@dataclass(frozen=True)
class AgentInfo:
    """Trading agent owned by a user."""
    id: str
    name: str
    strategy: str = ""
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AgentInfo":
        try:
            return cls(
                id=str(row["id"]),
                name=str(row["name"]),
                strategy=str(row.get("strategy") or ""),
                status=str(row.get("status") or "active"),
            )
        except KeyError as exc:
            raise LedgerValidationError(f"missing field {exc.args[0]!r}") from exc


# ─── Store Contract ───────────────────────────────────────────────────────────


class LedgerStore(Protocol):
    """What the analytics core needs from the external ledger/balance store."""

    def has_user(self, user_id: str) -> bool: ...

    def list_trades(self, user_id: str, since: datetime) -> Sequence[Mapping[str, Any]]: ...

    def list_balances(self, user_id: str) -> Sequence[Mapping[str, Any]]: ...

    def list_agents(self, user_id: str) -> Sequence[Mapping[str, Any]]: ...


# ─── SQLite Store ─────────────────────────────────────────────────────────────


class SQLiteLedgerStore:
    """
    SQLite-backed LedgerStore.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file. Use ":memory:" for in-memory
        (tests and local runs). Default: ":memory:".
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection = sqlite3.connect(
            db_path, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        # One connection shared by the request threadpool
        self._lock = threading.Lock()
        self._init_schema()

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def _init_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(_CREATE_USERS)
            self._conn.execute(_CREATE_TRADES)
            self._conn.execute(_CREATE_BALANCES)
            self._conn.execute(_CREATE_AGENTS)
            self._conn.execute(_CREATE_IDX_USER_TS)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteLedgerStore":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ── Write ──────────────────────────────────────────────────────────────

    def register_user(self, user_id: str) -> None:
        """Create an (empty) ledger for user_id. No-op if it exists."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
                (user_id, datetime.now(timezone.utc).isoformat()),
            )

    def add_trade(
        self,
        user_id: str,
        kind: str,
        usd_value: float,
        executed_at: Any,
        status: str = "success",
        amount: float = 1.0,
        from_asset: str = "USDC",
        to_asset: str = "ETH",
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        trade_id: Optional[str] = None,
    ) -> str:
        """Insert a trade row and return its id. Timestamps are stored as UTC ISO-8601."""
        self.register_user(user_id)
        trade_id = trade_id or str(uuid.uuid4())
        ts = parse_timestamp(executed_at).isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO trades
                    (id, user_id, agent_id, agent_name, kind, from_asset,
                     to_asset, amount, usd_value, executed_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (trade_id, user_id, agent_id, agent_name, kind, from_asset,
                 to_asset, amount, usd_value, ts, status),
            )
        return trade_id

    def set_balance(
        self,
        user_id: str,
        asset: str,
        balance: float,
        balance_usd: float,
        profit_loss: float = 0.0,
    ) -> None:
        self.register_user(user_id)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO balances
                    (user_id, asset, balance, balance_usd, profit_loss)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, asset, balance, balance_usd, profit_loss),
            )

    def add_agent(
        self,
        user_id: str,
        name: str,
        strategy: str = "",
        status: str = "active",
        agent_id: Optional[str] = None,
    ) -> str:
        self.register_user(user_id)
        agent_id = agent_id or str(uuid.uuid4())
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO agents (id, user_id, name, strategy, status) VALUES (?, ?, ?, ?, ?)",
                (agent_id, user_id, name, strategy, status),
            )
        return agent_id

    # ── Read (LedgerStore) ─────────────────────────────────────────────────

    def has_user(self, user_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return row is not None

    def list_trades(self, user_id: str, since: datetime) -> List[Dict[str, Any]]:
        # ISO-8601 UTC strings sort lexicographically in time order
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM trades
                WHERE user_id = ? AND executed_at >= ?
                ORDER BY executed_at ASC, rowid ASC
                """,
                (user_id, parse_timestamp(since).isoformat()),
            )
            return [dict(r) for r in cur.fetchall()]

    def list_balances(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM balances WHERE user_id = ? ORDER BY asset ASC", (user_id,)
            )
            return [dict(r) for r in cur.fetchall()]

    def list_agents(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM agents WHERE user_id = ? ORDER BY rowid ASC", (user_id,)
            )
            return [dict(r) for r in cur.fetchall()]


# ─── LedgerReader ─────────────────────────────────────────────────────────────


class LedgerReader:
    """
    Validating read-only accessor over a LedgerStore.

    Store exceptions (connection, auth) propagate unchanged; only malformed
    rows are turned into LedgerValidationError.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def _require_user(self, user_id: str) -> None:
        if not self._store.has_user(user_id):
            raise LedgerNotFound(user_id)

    def fetch(
        self,
        user_id: str,
        range_start: datetime,
        range_end: datetime,
        include_unsettled: bool = False,
    ) -> List[LedgerRecord]:
        """
        Return records executed within [range_start, range_end], oldest first.

        By default only settled (status == "success") records are returned.
        Pass include_unsettled=True to also get pending and failed ones.
        """
        self._require_user(user_id)
        start = parse_timestamp(range_start)
        end = parse_timestamp(range_end)

        records = [
            LedgerRecord.from_row(row)
            for row in self._store.list_trades(user_id, start)
        ]
        records = [
            r for r in records
            if start <= r.executed_at <= end
            and (include_unsettled or r.is_settled)
        ]
        # Stable: ties keep store order
        records.sort(key=lambda r: r.executed_at)
        logger.debug(
            "Ledger fetch user={} window={}..{} → {} records",
            user_id, start.isoformat(), end.isoformat(), len(records),
        )
        return records

    def current_balances(self, user_id: str) -> List[BalanceSnapshot]:
        self._require_user(user_id)
        return [BalanceSnapshot.from_row(row) for row in self._store.list_balances(user_id)]

    def agents(self, user_id: str) -> List[AgentInfo]:
        self._require_user(user_id)
        return [AgentInfo.from_row(row) for row in self._store.list_agents(user_id)]

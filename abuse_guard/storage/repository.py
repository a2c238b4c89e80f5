"""
Repository pattern for data access.

Defines the narrow ``Store`` interface the abuse-mitigation components talk
to (insert, query, update, stored procedures) and a SQLite implementation.
Table and column names are checked against a fixed schema before they are
interpolated into SQL; values are always bound as parameters.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from abuse_guard.core.errors import ConflictError, StoreError

# Column kinds drive (de)serialisation between Python values and SQLite.
TEXT, INT, BOOL, TS, DAY, JSON = "text", "int", "bool", "ts", "day", "json"

SCHEMA: Dict[str, Dict[str, str]] = {
    "security_events": {
        "id": INT,
        "user_id": TEXT,
        "ip_address": TEXT,
        "user_agent": TEXT,
        "event_type": TEXT,
        "severity": TEXT,
        "description": TEXT,
        "metadata": JSON,
        "created_at": TS,
    },
    "ip_bans": {
        "id": INT,
        "ip_address": TEXT,
        "reason": TEXT,
        "severity": TEXT,
        "ban_type": TEXT,
        "is_active": BOOL,
        "banned_at": TS,
        "expires_at": TS,
        "banned_by": TEXT,
        "unbanned_at": TS,
        "unban_reason": TEXT,
        "metadata": JSON,
    },
    "user_bans": {
        "id": INT,
        "user_id": TEXT,
        "reason": TEXT,
        "severity": TEXT,
        "ban_type": TEXT,
        "is_active": BOOL,
        "banned_at": TS,
        "expires_at": TS,
        "banned_by": TEXT,
        "unbanned_at": TS,
        "unban_reason": TEXT,
        "metadata": JSON,
    },
    "daily_usage": {
        "user_id": TEXT,
        "usage_date": DAY,
        "usage_type": TEXT,
        "count": INT,
        "updated_at": TS,
    },
}

BAN_TABLES = {"ip_bans": "ip_address", "user_bans": "user_id"}

_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}

DDL = [
    """
    CREATE TABLE IF NOT EXISTS security_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        ip_address TEXT NOT NULL,
        user_agent TEXT,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        description TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_security_events_ip ON security_events (ip_address, event_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_security_events_user ON security_events (user_id, event_type, created_at)",
    """
    CREATE TABLE IF NOT EXISTS ip_bans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ip_address TEXT NOT NULL,
        reason TEXT NOT NULL,
        severity TEXT NOT NULL,
        ban_type TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        banned_at TEXT NOT NULL,
        expires_at TEXT,
        banned_by TEXT,
        unbanned_at TEXT,
        unban_reason TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    # At most one active ban per subject, enforced by the database itself.
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_ip_bans_active ON ip_bans (ip_address) WHERE is_active = 1",
    """
    CREATE TABLE IF NOT EXISTS user_bans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        severity TEXT NOT NULL,
        ban_type TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        banned_at TEXT NOT NULL,
        expires_at TEXT,
        banned_by TEXT,
        unbanned_at TEXT,
        unban_reason TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_user_bans_active ON user_bans (user_id) WHERE is_active = 1",
    """
    CREATE TABLE IF NOT EXISTS daily_usage (
        user_id TEXT NOT NULL,
        usage_date TEXT NOT NULL,
        usage_type TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT,
        PRIMARY KEY (user_id, usage_date, usage_type)
    )
    """,
]


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO format so that string comparison orders correctly."""
    return value.isoformat(timespec="microseconds")


def _encode(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if kind == TS:
        return format_timestamp(value) if isinstance(value, datetime) else value
    if kind == DAY:
        return value.isoformat() if isinstance(value, date) else value
    if kind == BOOL:
        return 1 if value else 0
    if kind == JSON:
        return json.dumps(value, default=str, sort_keys=True)
    return value


def _decode(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == TS:
        return datetime.fromisoformat(value)
    if kind == DAY:
        return date.fromisoformat(value)
    if kind == BOOL:
        return bool(value)
    if kind == JSON:
        return json.loads(value) if value else {}
    return value


class Store(ABC):
    """Transactional key-value/relational store used by the core.

    Implementations must make ``call_procedure`` atomic: each procedure is a
    single indivisible operation as seen by concurrent callers.
    """

    @abstractmethod
    def initialize_schema(self) -> None:
        """Create tables, indexes and constraints if missing."""

    @abstractmethod
    def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it, including its generated id."""

    @abstractmethod
    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return matching rows as dictionaries."""

    @abstractmethod
    def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        """Return the number of matching rows."""

    @abstractmethod
    def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        """Apply ``patch`` to matching rows and return how many changed."""

    @abstractmethod
    def call_procedure(self, name: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        """Run a named stored procedure atomically."""


class SQLiteStore(Store):
    """SQLite-backed store.

    Opens one connection per operation. Procedures that read and then
    write run inside ``BEGIN IMMEDIATE`` so the write lock is held for the
    whole read-modify-write.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._procedures: Dict[str, Callable[..., Any]] = {
            "atomic_usage_check_and_increment": self._atomic_usage_check_and_increment,
            "decrement_usage_count": self._decrement_usage_count,
            "ban_statistics": self._ban_statistics,
            "expire_bans": self._expire_bans,
        }

    # -- schema -----------------------------------------------------------

    def initialize_schema(self) -> None:
        conn = get_connection(self.db_path)
        try:
            for statement in DDL:
                conn.execute(statement)
            conn.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    # -- generic operations ----------------------------------------------

    def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        columns = self._columns(table)
        self._check_fields(table, record.keys())
        names = [name for name in record if name != "id"]
        values = [_encode(columns[name], record[name]) for name in names]
        sql = "INSERT INTO {} ({}) VALUES ({})".format(
            table, ", ".join(names), ", ".join("?" for _ in names)
        )
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(sql, values)
            conn.commit()
            row = dict(record)
            if "id" in columns:
                row["id"] = cursor.lastrowid
            return row
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if table in BAN_TABLES:
                raise ConflictError("Subject already has an active ban") from e
            raise StoreError(str(e)) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        columns = self._columns(table)
        where, params = self._where(table, filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            self._check_fields(table, [order_by])
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [
                {key: _decode(columns[key], row[key]) for key in row.keys()}
                for row in rows
            ]
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        self._columns(table)
        where, params = self._where(table, filters)
        conn = get_connection(self.db_path)
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        columns = self._columns(table)
        self._check_fields(table, patch.keys())
        if not patch:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in patch)
        values = [_encode(columns[name], value) for name, value in patch.items()]
        where, params = self._where(table, filters)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"UPDATE {table} SET {assignments}{where}", values + params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def call_procedure(self, name: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise StoreError(f"Unknown procedure: {name}")
        return procedure(**dict(args or {}))

    # -- stored procedures -------------------------------------------------

    def _atomic_usage_check_and_increment(
        self,
        user_id: str,
        usage_type: str,
        daily_limit: int,
        usage_date: date,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        day = _encode(DAY, usage_date)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT count FROM daily_usage WHERE user_id = ? AND usage_date = ? AND usage_type = ?",
                (user_id, day, usage_type),
            ).fetchone()
            current = row["count"] if row else 0
            if current >= daily_limit:
                conn.rollback()
                return {"allowed": False, "new_count": current}
            conn.execute(
                """
                INSERT INTO daily_usage (user_id, usage_date, usage_type, count, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT (user_id, usage_date, usage_type)
                DO UPDATE SET count = count + 1, updated_at = excluded.updated_at
                """,
                (user_id, day, usage_type, format_timestamp(now or datetime.now())),
            )
            conn.commit()
            return {"allowed": True, "new_count": current + 1}
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _decrement_usage_count(self, user_id: str, usage_type: str, usage_date: date) -> int:
        day = _encode(DAY, usage_date)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                UPDATE daily_usage SET count = MAX(count - 1, 0)
                WHERE user_id = ? AND usage_date = ? AND usage_type = ?
                """,
                (user_id, day, usage_type),
            )
            row = conn.execute(
                "SELECT count FROM daily_usage WHERE user_id = ? AND usage_date = ? AND usage_type = ?",
                (user_id, day, usage_type),
            ).fetchone()
            conn.commit()
            return row["count"] if row else 0
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _ban_statistics(self, table: str, since: datetime) -> Dict[str, Any]:
        if table not in BAN_TABLES:
            raise StoreError(f"Not a ban table: {table}")
        conn = get_connection(self.db_path)
        try:
            stats: Dict[str, Any] = {
                "total_active": 0,
                "total_inactive": 0,
                "by_type": {},
                "by_severity": {},
                "recent": 0,
            }
            for row in conn.execute(
                f"SELECT is_active, ban_type, severity, COUNT(*) AS n FROM {table} "
                "GROUP BY is_active, ban_type, severity"
            ):
                if row["is_active"]:
                    stats["total_active"] += row["n"]
                else:
                    stats["total_inactive"] += row["n"]
                stats["by_type"][row["ban_type"]] = stats["by_type"].get(row["ban_type"], 0) + row["n"]
                stats["by_severity"][row["severity"]] = stats["by_severity"].get(row["severity"], 0) + row["n"]
            stats["recent"] = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE banned_at >= ?",
                (format_timestamp(since),),
            ).fetchone()[0]
            return stats
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _expire_bans(self, table: str, now: datetime) -> int:
        if table not in BAN_TABLES:
            raise StoreError(f"Not a ban table: {table}")
        stamp = format_timestamp(now)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                UPDATE {table}
                SET is_active = 0, unbanned_at = ?, unban_reason = 'expired'
                WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at <= ?
                """,
                (stamp, stamp),
            )
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    # -- helpers -----------------------------------------------------------

    def _columns(self, table: str) -> Dict[str, str]:
        try:
            return SCHEMA[table]
        except KeyError:
            raise StoreError(f"Unknown table: {table}") from None

    def _check_fields(self, table: str, names) -> None:
        unknown = set(names) - set(SCHEMA[table])
        if unknown:
            raise StoreError(f"Unknown columns for {table}: {sorted(unknown)}")

    def _where(self, table: str, filters: Optional[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        columns = SCHEMA[table]
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            name, _, op = key.partition("__")
            op = op or "eq"
            if name not in columns or op not in _OPERATORS:
                raise StoreError(f"Invalid filter for {table}: {key}")
            if value is None and op in ("eq", "ne"):
                clauses.append(f"{name} IS {'NOT ' if op == 'ne' else ''}NULL")
                continue
            clauses.append(f"{name} {_OPERATORS[op]} ?")
            params.append(_encode(columns[name], value))
        return " WHERE " + " AND ".join(clauses), params


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> SQLiteStore:
    """Create all tables in ``db_path`` and return a store bound to it.

    Args:
        db_path: Path to SQLite database file
    """
    store = SQLiteStore(db_path)
    store.initialize_schema()
    return store

"""
Repository pattern for data access.

Handles ledger persistence: accounts, quota counters, the number registry
and the append-only usage event log.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from .db import DEFAULT_DB_PATH, get_connection, immediate_transaction
from .models import (
    Account,
    EventStatus,
    PhoneNumber,
    ResourceKind,
    SubscriptionUsage,
    UsageEvent,
    to_naive_utc,
    utc_now,
)


class QuotaUpdateError(Exception):
    """Raised when a quota increment would exceed the limit or hit no row."""


class AccountNotFound(LookupError):
    """Raised when an account id has no ledger row."""


SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        balance INTEGER NOT NULL DEFAULT 0,
        total_spent INTEGER NOT NULL DEFAULT 0,
        api_token TEXT UNIQUE,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS subscription_usage (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL REFERENCES accounts(id),
        resource_kind TEXT NOT NULL,
        quota_limit INTEGER NOT NULL,
        quota_used INTEGER NOT NULL DEFAULT 0,
        period_start TEXT,
        period_end TEXT,
        created_at TEXT NOT NULL,
        CHECK (quota_used >= 0 AND quota_used <= quota_limit)
    );

    CREATE TABLE IF NOT EXISTS phone_numbers (
        number TEXT PRIMARY KEY,
        account_id INTEGER NOT NULL REFERENCES accounts(id),
        sms_supported INTEGER NOT NULL DEFAULT 0,
        sms_enabled INTEGER NOT NULL DEFAULT 0,
        deactivated INTEGER NOT NULL DEFAULT 0,
        can_be_used INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        account_id INTEGER NOT NULL,
        resource_kind TEXT NOT NULL,
        counterpart TEXT NOT NULL,
        source_number TEXT,
        direction TEXT,
        raw_quantity INTEGER NOT NULL,
        billed_units INTEGER NOT NULL,
        units_from_quota INTEGER NOT NULL,
        units_to_pay INTEGER NOT NULL,
        cost INTEGER NOT NULL,
        status TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}'
    );

    CREATE INDEX IF NOT EXISTS idx_subscription_usage_account
        ON subscription_usage (account_id, resource_kind, created_at);
    CREATE INDEX IF NOT EXISTS idx_usage_event_account
        ON usage_event (account_id, timestamp);
"""

_EVENT_COLUMNS = """
    timestamp, account_id, resource_kind, counterpart, source_number,
    direction, raw_quantity, billed_units, units_from_quota, units_to_pay,
    cost, status, payload
"""


def _stamp(value: datetime) -> str:
    # Fixed-width naive UTC so stored timestamps compare correctly as text
    return to_naive_utc(value).isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        balance=row["balance"],
        total_spent=row["total_spent"],
        api_token=row["api_token"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_usage(row: sqlite3.Row) -> SubscriptionUsage:
    return SubscriptionUsage(
        id=row["id"],
        account_id=row["account_id"],
        resource_kind=ResourceKind(row["resource_kind"]),
        quota_limit=row["quota_limit"],
        quota_used=row["quota_used"],
        created_at=datetime.fromisoformat(row["created_at"]),
        period_start=_parse_dt(row["period_start"]),
        period_end=_parse_dt(row["period_end"]),
    )


def _row_to_number(row: sqlite3.Row) -> PhoneNumber:
    return PhoneNumber(
        number=row["number"],
        account_id=row["account_id"],
        sms_supported=bool(row["sms_supported"]),
        sms_enabled=bool(row["sms_enabled"]),
        deactivated=bool(row["deactivated"]),
        can_be_used=bool(row["can_be_used"]),
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        timestamp=datetime.fromisoformat(row["timestamp"]),
        account_id=row["account_id"],
        resource_kind=ResourceKind(row["resource_kind"]),
        counterpart=row["counterpart"],
        source_number=row["source_number"],
        direction=row["direction"],
        raw_quantity=row["raw_quantity"],
        billed_units=row["billed_units"],
        units_from_quota=row["units_from_quota"],
        units_to_pay=row["units_to_pay"],
        cost=row["cost"],
        status=EventStatus(row["status"]),
        payload=json.loads(row["payload"] or "{}"),
    )


class LedgerRepository:
    """Repository for accounts, quota counters and usage events.

    Every write that other requests may race on is a single conditional
    UPDATE or runs under an immediate transaction, so concurrent events for
    the same account never lose updates.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the ledger tables if they don't exist."""
        initialize_schema(self.db_path)

    @contextmanager
    def locked(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection holding the database write lock.

        Reads and writes issued on the yielded connection form one
        serializable unit; it commits on exit and rolls back on error.
        """
        conn = get_connection(self.db_path)
        try:
            with immediate_transaction(conn):
                yield conn
        finally:
            conn.close()

    # Accounts

    def create_account(
        self,
        name: str,
        balance: int = 0,
        api_token: Optional[str] = None,
    ) -> Account:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO accounts (name, balance, total_spent, api_token, created_at)
                VALUES (?, ?, 0, ?, ?)
                """,
                (name, balance, api_token, _stamp(utc_now())),
            )
            account_id = cursor.lastrowid
        finally:
            conn.close()
        return self.get_account(account_id)

    def get_account(self, account_id: int) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def get_account_by_token(self, api_token: str) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM accounts WHERE api_token = ?", (api_token,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def update_balance(self, account_id: int, delta: int) -> int:
        """Apply a signed delta to the wallet balance in one atomic write.

        A negative delta is a charge and is added to the account's lifetime
        spend as well.

        Args:
            account_id: Account to update
            delta: Signed amount in minor units

        Returns:
            The balance after the update

        Raises:
            AccountNotFound: If the account does not exist
        """
        spent = -delta if delta < 0 else 0
        conn = get_connection(self.db_path)
        try:
            with immediate_transaction(conn):
                cursor = conn.execute(
                    """
                    UPDATE accounts
                    SET balance = balance + ?, total_spent = total_spent + ?
                    WHERE id = ?
                    """,
                    (delta, spent, account_id),
                )
                if cursor.rowcount == 0:
                    raise AccountNotFound(f"Account {account_id} not found")
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (account_id,)
                ).fetchone()
            return row["balance"]
        finally:
            conn.close()

    def top_up(self, account_id: int, amount: int) -> int:
        """Credit the wallet. Returns the new balance."""
        if amount <= 0:
            raise ValueError("top-up amount must be > 0")
        return self.update_balance(account_id, amount)

    def refund(self, account_id: int, amount: int) -> int:
        """Return a previous charge to the wallet and reduce lifetime spend."""
        if amount <= 0:
            raise ValueError("refund amount must be > 0")
        conn = get_connection(self.db_path)
        try:
            with immediate_transaction(conn):
                cursor = conn.execute(
                    """
                    UPDATE accounts
                    SET balance = balance + ?,
                        total_spent = MAX(0, total_spent - ?)
                    WHERE id = ?
                    """,
                    (amount, amount, account_id),
                )
                if cursor.rowcount == 0:
                    raise AccountNotFound(f"Account {account_id} not found")
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (account_id,)
                ).fetchone()
            return row["balance"]
        finally:
            conn.close()

    # Subscription quota

    def activate_plan(
        self,
        account_id: int,
        resource_kind: ResourceKind,
        quota_limit: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> SubscriptionUsage:
        """Start a new quota period, superseding the previous one.

        Earlier rows are kept for history; lookups always pick the newest
        row covering the current time.
        """
        if quota_limit < 0:
            raise ValueError("quota_limit must be >= 0")
        period_start = to_naive_utc(period_start) if period_start else None
        period_end = to_naive_utc(period_end) if period_end else None
        if period_start and period_end and period_end <= period_start:
            raise ValueError("period_end must be after period_start")
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO subscription_usage
                (account_id, resource_kind, quota_limit, quota_used,
                 period_start, period_end, created_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    account_id,
                    resource_kind.value,
                    quota_limit,
                    _stamp(period_start) if period_start else None,
                    _stamp(period_end) if period_end else None,
                    _stamp(created_at or utc_now()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM subscription_usage WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return _row_to_usage(row)
        finally:
            conn.close()

    def get_current_usage(
        self,
        account_id: int,
        resource_kind: ResourceKind,
        now: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[SubscriptionUsage]:
        """Get the quota row in force for an account and resource.

        Rows whose period does not cover ``now`` are ignored; among the rest
        the most recently created one wins. Rows without period bounds are
        open-ended.

        Args:
            account_id: Account to look up
            resource_kind: Resource the quota applies to
            now: Reference time (defaults to now; aware values are converted to UTC)
            conn: Connection to read through, e.g. one from :meth:`locked`
        """
        moment = _stamp(now or utc_now())
        own_conn = conn is None
        conn = conn or get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT * FROM subscription_usage
                WHERE account_id = ? AND resource_kind = ?
                  AND (period_start IS NULL OR period_start <= ?)
                  AND (period_end IS NULL OR period_end > ?)
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (account_id, resource_kind.value, moment, moment),
            ).fetchone()
            return _row_to_usage(row) if row else None
        finally:
            if own_conn:
                conn.close()

    def increment_used(
        self,
        usage_id: int,
        delta: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Add ``delta`` to a quota counter without passing its limit.

        The increment is a single conditional UPDATE, so it is safe against
        concurrent writers even outside a transaction.

        Raises:
            QuotaUpdateError: If the row is missing or the limit would be passed
        """
        if delta <= 0:
            raise ValueError("delta must be > 0")
        own_conn = conn is None
        conn = conn or get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE subscription_usage
                SET quota_used = quota_used + ?
                WHERE id = ? AND quota_used + ? <= quota_limit
                """,
                (delta, usage_id, delta),
            )
            if cursor.rowcount == 0:
                raise QuotaUpdateError(
                    f"Cannot add {delta} units to subscription usage {usage_id}"
                )
        finally:
            if own_conn:
                conn.close()

    # Number registry

    def register_number(self, number: PhoneNumber) -> PhoneNumber:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO phone_numbers
                (number, account_id, sms_supported, sms_enabled,
                 deactivated, can_be_used, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    number.number,
                    number.account_id,
                    int(number.sms_supported),
                    int(number.sms_enabled),
                    int(number.deactivated),
                    int(number.can_be_used),
                    _stamp(utc_now()),
                ),
            )
        finally:
            conn.close()
        return number

    def find_number(self, number: str) -> Optional[PhoneNumber]:
        """Reverse lookup of a provisioned number."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM phone_numbers WHERE number = ?", (number,)
            ).fetchone()
            return _row_to_number(row) if row else None
        finally:
            conn.close()

    def find_account_number(self, account_id: int, number: str) -> Optional[PhoneNumber]:
        """Get a number only if it is provisioned for the given account."""
        found = self.find_number(number)
        if found is None or found.account_id != account_id:
            return None
        return found

    # Usage events

    def insert_usage_event(self, event: UsageEvent) -> None:
        insert_usage_event(event, self.db_path)

    def get_recent_events(
        self,
        account_id: Optional[int] = None,
        resource_kind: Optional[ResourceKind] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        return fetch_recent_usage_events(
            account_id=account_id,
            resource_kind=resource_kind,
            limit=limit,
            db_path=self.db_path,
        )

    def get_spend_summary(self, account_id: int, days: int = 30) -> Dict[str, int]:
        """Get usage totals for an account over the last ``days`` days.

        ``total_cost`` sums the charged amounts, so it agrees with the
        wallet debits behind ``Account.total_spent``.

        Returns:
            Dictionary with event count, billed units and cost totals
        """
        conn = get_connection(self.db_path)
        try:
            cutoff = _stamp(utc_now() - timedelta(days=days))
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_events,
                    SUM(billed_units) AS billed_units,
                    SUM(units_from_quota) AS units_from_quota,
                    SUM(cost) AS total_cost
                FROM usage_event
                WHERE account_id = ? AND timestamp >= ?
                """,
                (account_id, cutoff),
            ).fetchone()
            return {
                "total_events": row["total_events"] or 0,
                "billed_units": row["billed_units"] or 0,
                "units_from_quota": row["units_from_quota"] or 0,
                "total_cost": row["total_cost"] or 0,
            }
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[LedgerRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> LedgerRepository:
    """Get a repository instance.

    This function provides a singleton instance of the LedgerRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of LedgerRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = LedgerRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    The usage_event table is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO usage_event ({_EVENT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                _stamp(event.timestamp),
                event.account_id,
                event.resource_kind.value,
                event.counterpart,
                event.source_number,
                event.direction,
                event.raw_quantity,
                event.billed_units,
                event.units_from_quota,
                event.units_to_pay,
                event.cost,
                event.status.value,
                json.dumps(event.payload, default=str),
            ),
        )
    finally:
        conn.close()


def fetch_recent_usage_events(
    account_id: Optional[int] = None,
    resource_kind: Optional[ResourceKind] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageEvent]:
    """Fetch recent usage events, optionally filtered by account and resource.

    Returns events in reverse chronological order (newest first).

    Args:
        account_id: Optional filter for a specific account
        resource_kind: Optional filter for a specific resource
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of usage events ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
        params: list = []
        conditions = []

        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if resource_kind is not None:
            conditions.append("resource_kind = ?")
            params.append(resource_kind.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()

"""
Repository pattern for data access.

Handles the subscription ledger rows and the append-only usage log.
All SQLite failures surface as PersistenceError.
"""

import calendar
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from enhpix.core.errors import (
    InsufficientCreditsError,
    PersistenceError,
    SubscriptionNotFoundError,
)
from enhpix.core.plans import PLAN_CATALOG, TRIAL_PLAN_ID, PlanCatalog, Quality
from enhpix.observability.logging import get_logger

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    BillingCycle,
    CreditResult,
    Subscription,
    SubscriptionStatus,
    UsageOutcome,
    UsageRecord,
)

logger = get_logger(__name__)

TRIAL_PERIOD_DAYS = 30

_SUBSCRIPTION_COLUMNS = """
    id, user_id, plan_id, status, billing_cycle, period_start, period_end,
    images_total, images_used, images_remaining, external_subscription_ref
"""

_USAGE_COLUMNS = """
    timestamp, quality, scale, file_size_mb, estimated_cost,
    user_id, plan_id, outcome, prediction_id
"""


def _ts(value: datetime) -> str:
    # Fixed width so lexicographic order matches time order
    return value.isoformat(timespec="microseconds")


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_end_for(start: datetime, cycle: BillingCycle) -> datetime:
    """End of a billing period: one calendar month or one calendar year."""
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


@contextmanager
def _connection(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection, translating SQLite failures into PersistenceError.

    Any transaction left open when the block exits is rolled back by close().
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise PersistenceError(f"Cannot open database {db_path}: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        logger.error("database_operation_failed", db_path=db_path, error=str(e))
        raise PersistenceError(f"Database operation failed: {e}") from e
    finally:
        conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and usage log tables if they don't exist.

    The usage_record table is an append-only log: rows are inserted and,
    for retention, deleted, but never updated. WAL journaling lets
    summary reads run against a snapshot without blocking appenders.

    Args:
        db_path: Path to SQLite database file
    """
    with _connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS subscription (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE,
                plan_id TEXT NOT NULL,
                status TEXT NOT NULL,
                billing_cycle TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                images_total INTEGER NOT NULL,
                images_used INTEGER NOT NULL,
                images_remaining INTEGER NOT NULL,
                external_subscription_ref TEXT,
                updated_at TEXT NOT NULL,
                CHECK (images_remaining >= 0),
                CHECK (images_used + images_remaining = images_total),
                CHECK (period_end > period_start)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_payment_event (
                idempotency_key TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                quality TEXT NOT NULL,
                scale INTEGER NOT NULL,
                file_size_mb REAL NOT NULL,
                estimated_cost REAL NOT NULL,
                user_id TEXT,
                plan_id TEXT,
                outcome TEXT NOT NULL,
                prediction_id TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_usage_record_timestamp ON usage_record (timestamp)"
        )
        conn.commit()


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row[0],
        user_id=row[1],
        plan_id=row[2],
        status=SubscriptionStatus(row[3]),
        billing_cycle=BillingCycle(row[4]),
        period_start=datetime.fromisoformat(row[5]),
        period_end=datetime.fromisoformat(row[6]),
        images_total=row[7],
        images_used=row[8],
        images_remaining=row[9],
        external_subscription_ref=row[10],
    )


def _row_to_usage_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row[0]),
        quality=Quality(row[1]),
        scale=row[2],
        file_size_mb=row[3],
        estimated_cost=row[4],
        user_id=row[5],
        plan_id=row[6],
        outcome=UsageOutcome(row[7]),
        prediction_id=row[8],
    )


class SubscriptionRepository:
    """Persistence for per-user subscription ledger rows.

    Every counter change is a single conditional statement inside an
    immediate transaction, so concurrent callers can never drive
    images_remaining below zero.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, catalog: PlanCatalog = PLAN_CATALOG):
        self.db_path = db_path
        self.catalog = catalog

    def _select(self, conn: sqlite3.Connection, user_id: str) -> Optional[Subscription]:
        row = conn.execute(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscription WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def _require(self, conn: sqlite3.Connection, user_id: str) -> Subscription:
        subscription = self._select(conn, user_id)
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)
        return subscription

    def get(self, user_id: str) -> Subscription:
        """Get the current subscription for a user.

        Raises:
            SubscriptionNotFoundError: If the user was never provisioned
            PersistenceError: If the store is unavailable
        """
        with _connection(self.db_path) as conn:
            return self._require(conn, user_id)

    def find_by_external_ref(self, external_subscription_ref: str) -> Optional[Subscription]:
        """Look up the subscription a payment provider reference belongs to."""
        with _connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscription WHERE external_subscription_ref = ?",
                (external_subscription_ref,),
            ).fetchone()
            return _row_to_subscription(row) if row else None

    def provision_trial(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Create the signup trial record. Existing users are left untouched.

        Args:
            user_id: User to provision
            now: Start of the trial period (defaults to current time)

        Returns:
            The user's subscription after provisioning
        """
        now = now or datetime.now()
        plan = self.catalog.get(TRIAL_PLAN_ID)
        with _connection(self.db_path) as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO subscription ({_SUBSCRIPTION_COLUMNS}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                f"sub_{uuid.uuid4().hex}",
                user_id,
                plan.id,
                SubscriptionStatus.TRIAL.value,
                BillingCycle.MONTHLY.value,
                _ts(now),
                _ts(now + timedelta(days=TRIAL_PERIOD_DAYS)),
                plan.images_per_month,
                0,
                plan.images_per_month,
                None,
                _ts(now),
            ))
            conn.commit()
            if cursor.rowcount:
                logger.info("trial_provisioned", user_id=user_id, images_total=plan.images_per_month)
            return self._require(conn, user_id)

    def apply_payment(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        external_subscription_ref: str,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Switch a user to a paid plan and reset the quota for a new period.

        Replayed confirmations are ignored: the idempotency key (the
        provider event id, or ref:plan:cycle when no event id is known)
        is recorded in the same transaction as the quota reset.

        Args:
            user_id: User that paid
            plan_id: Purchased plan
            billing_cycle: Monthly or yearly renewal
            external_subscription_ref: Payment provider subscription id
            event_id: Payment provider event id, if delivered by webhook
            now: Start of the new period (defaults to current time)

        Returns:
            The user's subscription after the payment is applied

        Raises:
            UnknownPlanError: If plan_id is not in the catalog
            SubscriptionNotFoundError: If the user was never provisioned
        """
        plan = self.catalog.get(plan_id)
        now = now or datetime.now()
        key = event_id or f"{external_subscription_ref}:{plan_id}:{billing_cycle.value}"

        with _connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = self._require(conn, user_id)
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processed_payment_event (idempotency_key, user_id, applied_at) "
                "VALUES (?, ?, ?)",
                (key, user_id, _ts(now)),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                logger.info(
                    "payment_already_applied",
                    user_id=user_id,
                    idempotency_key=key,
                    plan_id=current.plan_id,
                )
                return current

            conn.execute("""
                UPDATE subscription
                SET plan_id = ?, status = ?, billing_cycle = ?,
                    period_start = ?, period_end = ?,
                    images_total = ?, images_used = 0, images_remaining = ?,
                    external_subscription_ref = ?, updated_at = ?
                WHERE user_id = ?
            """, (
                plan.id,
                SubscriptionStatus.ACTIVE.value,
                billing_cycle.value,
                _ts(now),
                _ts(period_end_for(now, billing_cycle)),
                plan.images_per_month,
                plan.images_per_month,
                external_subscription_ref,
                _ts(now),
                user_id,
            ))
            conn.commit()
            logger.info(
                "payment_applied",
                user_id=user_id,
                plan_id=plan.id,
                billing_cycle=billing_cycle.value,
                images_total=plan.images_per_month,
            )
            return self._require(conn, user_id)

    def consume_credit(self, user_id: str) -> CreditResult:
        """Atomically take one image credit.

        The check and the decrement are one conditional UPDATE, so two
        racing requests can never both take the last credit.

        Raises:
            InsufficientCreditsError: If no images remain (nothing is changed)
            SubscriptionNotFoundError: If the user was never provisioned
        """
        with _connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE subscription
                SET images_remaining = images_remaining - 1,
                    images_used = images_used + 1,
                    updated_at = ?
                WHERE user_id = ? AND images_remaining > 0
            """, (_ts(datetime.now()), user_id))
            if cursor.rowcount == 0:
                conn.rollback()
                self._require(conn, user_id)
                raise InsufficientCreditsError(user_id)
            remaining = conn.execute(
                "SELECT images_remaining FROM subscription WHERE user_id = ?",
                (user_id,),
            ).fetchone()[0]
            conn.commit()
            return CreditResult(success=True, remaining=remaining)

    def cancel(self, external_subscription_ref: str) -> Optional[Subscription]:
        """Mark the subscription behind a provider reference as canceled.

        Remaining credits stay usable until the period ends.

        Returns:
            The updated subscription, or None if the reference is unknown
        """
        with _connection(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE subscription SET status = ?, updated_at = ? WHERE external_subscription_ref = ?",
                (SubscriptionStatus.CANCELED.value, _ts(datetime.now()), external_subscription_ref),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscription WHERE external_subscription_ref = ?",
                (external_subscription_ref,),
            ).fetchone()
            return _row_to_subscription(row)

    def roll_over_period(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Start a new period for an active subscription, restoring its quota.

        Subscriptions that are not active are returned unchanged.
        """
        now = now or datetime.now()
        with _connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = self._require(conn, user_id)
            if current.status != SubscriptionStatus.ACTIVE:
                conn.rollback()
                return current
            conn.execute("""
                UPDATE subscription
                SET images_used = 0, images_remaining = images_total,
                    period_start = ?, period_end = ?, updated_at = ?
                WHERE user_id = ?
            """, (_ts(now), _ts(period_end_for(now, current.billing_cycle)), _ts(now), user_id))
            conn.commit()
            logger.info("period_rolled_over", user_id=user_id, plan_id=current.plan_id)
            return self._require(conn, user_id)

    def expire_if_due(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Mark a trial or active subscription expired once its period has ended."""
        now = now or datetime.now()
        with _connection(self.db_path) as conn:
            conn.execute("""
                UPDATE subscription SET status = ?, updated_at = ?
                WHERE user_id = ? AND status IN (?, ?) AND period_end < ?
            """, (
                SubscriptionStatus.EXPIRED.value,
                _ts(now),
                user_id,
                SubscriptionStatus.TRIAL.value,
                SubscriptionStatus.ACTIVE.value,
                _ts(now),
            ))
            conn.commit()
            return self._require(conn, user_id)


class UsageRepository:
    """Repository for the append-only usage log."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: UsageRecord) -> None:
        """Append a single record. One INSERT, so a record is never half-written."""
        with _connection(self.db_path) as conn:
            conn.execute(f"""
                INSERT INTO usage_record ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                _ts(record.timestamp),
                record.quality.value,
                record.scale,
                record.file_size_mb,
                record.estimated_cost,
                record.user_id,
                record.plan_id,
                record.outcome.value,
                record.prediction_id,
            ))
            conn.commit()

    def fetch(
        self,
        since: Optional[datetime] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[UsageRecord]:
        """Fetch records, newest first.

        Args:
            since: Only records at or after this time
            user_id: Only records for this user
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by timestamp (newest first)
        """
        query = f"SELECT {_USAGE_COLUMNS} FROM usage_record"
        params: list = []
        conditions = []

        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(_ts(since))
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with _connection(self.db_path) as conn:
            return [_row_to_usage_record(row) for row in conn.execute(query, params).fetchall()]

    def delete_before(self, cutoff: datetime) -> int:
        """Delete records strictly older than the cutoff.

        Returns:
            Number of records removed
        """
        with _connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM usage_record WHERE timestamp < ?", (_ts(cutoff),))
            conn.commit()
            return cursor.rowcount

"""
Subscription store: every write is a single conditional SQL statement.

The reconciler never reads a row, computes a new value and writes it back.
Concurrent or repeated deliveries of the same event therefore converge on the
same final row instead of racing.

Upserts use the dialect's INSERT ... ON CONFLICT DO UPDATE (PostgreSQL in
production, SQLite in tests), keyed on stripe_subscription_id.

Error mapping:
- IntegrityError -> ConflictingRecordError (terminal; retrying cannot help)
- any other SQLAlchemyError -> TransientStoreError (retryable)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.billing.errors import ConflictingRecordError, TransientStoreError
from src.models.subscription import (
    ADOPTABLE_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)

subscriptions_table = Subscription.__table__

# Columns an upsert may overwrite. id, user_id and created_at are fixed at insert.
UPSERT_COLUMNS = (
    "tier",
    "status",
    "start_date",
    "end_date",
    "stripe_customer_id",
    "stripe_price_id",
    "cancel_at_period_end",
)


class SubscriptionStore:
    """
    Row store for subscriptions.

    One instance per request/session. Each public write method commits its
    own transaction.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    # ------------------------------------------------------------------ reads

    def get_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        row = self._read(select(Subscription).where(Subscription.user_id == user_id))
        return row.to_record() if row else None

    def get_by_subscription_id(self, stripe_subscription_id: str) -> Optional[SubscriptionRecord]:
        row = self._read(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
        return row.to_record() if row else None

    def _read(self, stmt) -> Optional[Subscription]:
        try:
            return self.db.execute(stmt.execution_options(populate_existing=True)).scalars().first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Subscription read failed", extra={"error": str(e)})
            raise TransientStoreError() from e

    # ----------------------------------------------------------------- writes

    def upsert_subscription(self, values: Dict[str, Any]) -> None:
        """
        Insert or update the row for values["stripe_subscription_id"].

        If the user already owns a row that holds no live subscription (a
        checkout placeholder, or a canceled/expired earlier subscription),
        that row is adopted first so user_id stays unique.

        Raises:
            ConflictingRecordError: The subscription id belongs to another
                user, or the user already holds a different live subscription
            TransientStoreError: Storage failure
        """
        user_id = values["user_id"]
        subscription_id = values["stripe_subscription_id"]
        table = subscriptions_table

        adopt = (
            update(table)
            .where(
                table.c.user_id == user_id,
                (table.c.stripe_subscription_id.is_(None))
                | (
                    (table.c.stripe_subscription_id != subscription_id)
                    & table.c.status.in_(sorted(ADOPTABLE_STATUSES))
                ),
            )
            .values(
                stripe_subscription_id=subscription_id,
                deleted_at=None,
                **{col: values[col] for col in UPSERT_COLUMNS},
            )
        )

        insert_stmt = self._insert().values(**values)
        upsert = insert_stmt.on_conflict_do_update(
            index_elements=[table.c.stripe_subscription_id],
            set_={
                **{col: insert_stmt.excluded[col] for col in UPSERT_COLUMNS},
                "deleted_at": case(
                    (insert_stmt.excluded.status.in_(sorted(TERMINAL_STATUSES)), table.c.deleted_at),
                    else_=None,
                ),
            },
            where=table.c.user_id == insert_stmt.excluded.user_id,
        )

        try:
            adopted = self.db.execute(adopt).rowcount
            written = self.db.execute(upsert).rowcount
            if not written:
                self.db.rollback()
                raise ConflictingRecordError(
                    f"Subscription {subscription_id} is attached to a different user"
                )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning("Subscription upsert violated a unique constraint", extra={
                "user_id": user_id,
                "provider_subscription_id": subscription_id,
                "error": str(e.orig),
            })
            raise ConflictingRecordError(
                f"User {user_id} already holds a different live subscription"
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Subscription upsert failed", extra={
                "user_id": user_id,
                "provider_subscription_id": subscription_id,
                "error": str(e),
            })
            raise TransientStoreError() from e

        logger.info("Subscription upserted", extra={
            "user_id": user_id,
            "provider_subscription_id": subscription_id,
            "status": values["status"],
            "adopted_existing_row": bool(adopted),
        })

    def mark_deleted(self, stripe_subscription_id: str, now: datetime) -> bool:
        """
        Soft-delete: status=canceled, end_date=now, cancel_at_period_end=false.

        A row that was already soft-deleted keeps its original end_date and
        deleted_at, so a redelivered deletion leaves it unchanged.

        Returns:
            True if a row matched
        """
        table = subscriptions_table
        already_deleted = table.c.deleted_at.is_not(None)
        stmt = (
            update(table)
            .where(table.c.stripe_subscription_id == stripe_subscription_id)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                end_date=case((already_deleted, table.c.end_date), else_=now),
                deleted_at=case((already_deleted, table.c.deleted_at), else_=now),
                cancel_at_period_end=False,
            )
        )
        return self._execute_update(stmt, stripe_subscription_id=stripe_subscription_id) > 0

    def mark_payment_succeeded(self, stripe_subscription_id: str) -> bool:
        """
        Reactivate the row after a successful payment.

        Clears past_due, and also a cancel that came from repeated payment
        failures. Rows flagged cancel_at_period_end return to their grace
        period status. Rows deleted by the provider and expired rows are left
        alone.
        """
        table = subscriptions_table
        stmt = (
            update(table)
            .where(
                table.c.stripe_subscription_id == stripe_subscription_id,
                table.c.deleted_at.is_(None),
                table.c.status != SubscriptionStatus.EXPIRED.value,
            )
            .values(
                status=case(
                    (table.c.cancel_at_period_end.is_(True), SubscriptionStatus.ACTIVE_UNTIL_PERIOD_END.value),
                    else_=SubscriptionStatus.ACTIVE.value,
                ),
            )
        )
        return self._execute_update(stmt, stripe_subscription_id=stripe_subscription_id) > 0

    def mark_payment_failed(self, stripe_subscription_id: str, status: SubscriptionStatus) -> bool:
        """Set past_due or canceled after a failed payment. Canceled/expired rows are left alone."""
        table = subscriptions_table
        stmt = (
            update(table)
            .where(
                table.c.stripe_subscription_id == stripe_subscription_id,
                table.c.status.not_in(sorted(TERMINAL_STATUSES)),
            )
            .values(status=status.value)
        )
        return self._execute_update(stmt, stripe_subscription_id=stripe_subscription_id) > 0

    def ensure_customer_placeholder(self, user_id: str, stripe_customer_id: str) -> None:
        """
        Remember the provider customer for a user before any subscription exists.

        Inserts {tier: free, status: none}; an existing row only gains the
        customer id if it had none.
        """
        table = subscriptions_table
        insert_stmt = self._insert().values(
            user_id=user_id,
            tier=SubscriptionTier.FREE.value,
            status=SubscriptionStatus.NONE.value,
            stripe_customer_id=stripe_customer_id,
            cancel_at_period_end=False,
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[table.c.user_id],
            set_={"stripe_customer_id": insert_stmt.excluded.stripe_customer_id},
            where=table.c.stripe_customer_id.is_(None),
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Customer placeholder write failed", extra={"user_id": user_id, "error": str(e)})
            raise TransientStoreError() from e

    def expire_lapsed(self, now: datetime) -> int:
        """Move grace-period rows whose end_date has passed to expired."""
        table = subscriptions_table
        stmt = (
            update(table)
            .where(
                table.c.status == SubscriptionStatus.ACTIVE_UNTIL_PERIOD_END.value,
                table.c.end_date.is_not(None),
                table.c.end_date <= now,
            )
            .values(status=SubscriptionStatus.EXPIRED.value)
        )
        return self._execute_update(stmt)

    # ---------------------------------------------------------------- helpers

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(subscriptions_table)
        if dialect == "sqlite":
            return sqlite.insert(subscriptions_table)
        raise RuntimeError(f"Atomic upsert not supported for dialect {dialect!r}")

    def _execute_update(self, stmt, **log_fields) -> int:
        try:
            rowcount = self.db.execute(stmt).rowcount
            self.db.commit()
            return rowcount
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictingRecordError(str(e.orig)) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Subscription update failed", extra={**log_fields, "error": str(e)})
            raise TransientStoreError() from e

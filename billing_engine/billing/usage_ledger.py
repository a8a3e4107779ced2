"""
Usage ledger.

One row per (user, billing window), guarded by a UNIQUE constraint. The
database does all coordination: creation is an insert that ignores the
conflict, increments are single UPDATE statements. Nothing here reads a
counter and writes it back.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from billing_engine.errors.domain import TransientStoreError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.usage import USAGE_DIMENSIONS, UsageRecord
from billing_engine.utils import utcnow

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@contextmanager
def _store_errors(operation: str, **context):
    try:
        yield
    except OperationalError as e:
        db.session.rollback()
        logger.error(f"Usage store unavailable during {operation}", extra={**context, "error": str(e)})
        raise TransientStoreError("Usage store unavailable", **context) from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Usage store failure during {operation}", extra={**context, "error": str(e)})
        raise


class UsageLedger:
    def __init__(self, clock=utcnow):
        self.clock = clock

    def find(self, user_id: str, period_start: datetime, period_end: datetime) -> Optional[UsageRecord]:
        with _store_errors("find", user_id=user_id):
            return UsageRecord.query.filter_by(
                user_id=user_id, period_start=period_start, period_end=period_end
            ).first()

    def latest_before(self, user_id: str, period_end: datetime) -> Optional[UsageRecord]:
        """Most recent record ending at or before ``period_end``."""
        with _store_errors("latest_before", user_id=user_id):
            return (
                UsageRecord.query
                .filter(UsageRecord.user_id == user_id, UsageRecord.period_end <= period_end)
                .order_by(UsageRecord.period_end.desc())
                .first()
            )

    def get_or_create(self, user_id: str, period_start: datetime, period_end: datetime) -> UsageRecord:
        """
        Return the record for the window, creating it if needed. Safe under
        any number of concurrent callers: exactly one row exists afterwards.
        """
        if period_end <= period_start:
            raise ValidationError("period_end must be after period_start", field="period_end")

        record = self.find(user_id, period_start, period_end)
        if record is not None:
            return record

        with _store_errors("get_or_create", user_id=user_id):
            self._insert_ignoring_conflict(user_id, period_start, period_end)
            record = UsageRecord.query.filter_by(
                user_id=user_id, period_start=period_start, period_end=period_end
            ).one()

        logger.debug(
            "Usage window ready",
            extra={"user_id": user_id, "period_start": str(period_start), "period_end": str(period_end)},
        )
        return record

    def increment(self, user_id: str, dimension: str, amount: int,
                  period_start: datetime, period_end: datetime) -> UsageRecord:
        """Atomically add ``amount`` to one counter of the window's record."""
        if dimension not in USAGE_DIMENSIONS:
            raise ValidationError(f"Unknown usage dimension: {dimension}", field="dimension")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Usage increments must be positive integers", field="amount")

        self.get_or_create(user_id, period_start, period_end)

        column = getattr(UsageRecord, dimension)
        stmt = (
            update(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.period_start == period_start,
                UsageRecord.period_end == period_end,
            )
            .values({column: column + amount, UsageRecord.last_updated_at: self.clock()})
            .execution_options(synchronize_session=False)
        )

        with _store_errors("increment", user_id=user_id, dimension=dimension):
            db.session.execute(stmt)
            db.session.commit()
            record = UsageRecord.query.filter_by(
                user_id=user_id, period_start=period_start, period_end=period_end
            ).one()
        return record

    def _insert_ignoring_conflict(self, user_id, period_start, period_end) -> None:
        now = self.clock()
        values = {
            "user_id": user_id,
            "period_start": period_start,
            "period_end": period_end,
            "api_calls": 0,
            "items_created": 0,
            "storage_mb": 0,
            "last_updated_at": now,
            "created_at": now,
        }

        insert = _UPSERT_DIALECTS.get(db.session.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(UsageRecord).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "period_start", "period_end"]
            )
            db.session.execute(stmt)
            db.session.commit()
            return

        # Dialects without ON CONFLICT: the loser of the race hits the constraint.
        try:
            db.session.add(UsageRecord(**values))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

from typing import Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from abtesting.models.orm.ab_test import (
    ABTestORM,
    ABTestStatus,
    VariantORM,
    VariantStatsORM,
)
from abtesting.models.orm.base import utcnow

logger = structlog.get_logger(__name__)

STAT_COUNTERS = (
    "assignments",
    "generations",
    "errors",
    "total_latency_ms",
    "total_quality_score",
    "feedback_count",
    "total_feedback_score",
)


class ABTestRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_test(self, test_fields: dict, variants: list[dict]) -> ABTestORM:
        """
        Creates a test together with its variants and zeroed counters.

        Args:
            test_fields: Column values for the ab_tests row, test_id included.
            variants: Column values for each variant, in position order.

        Returns:
            The created ABTestORM object.
        """
        db_test = ABTestORM(**test_fields)
        self.db.add(db_test)

        for variant_dict in variants:
            self.db.add(VariantORM(test_id=db_test.test_id, **variant_dict))
            self.db.add(
                VariantStatsORM(
                    test_id=db_test.test_id,
                    variant_id=variant_dict["variant_id"],
                    **{counter: 0 for counter in STAT_COUNTERS},
                )
            )

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("ab_test.create_failed", test_id=db_test.test_id, error=str(e))
            raise

        self.db.refresh(db_test)
        return db_test

    def get_test(self, test_id: str) -> Optional[ABTestORM]:
        """
        Fetches a single test with its variants and counters.

        populate_existing makes the read reflect increments issued as plain
        UPDATE statements since the row was last loaded into this session.
        """
        stmt = (
            select(ABTestORM)
            .where(ABTestORM.test_id == test_id)
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).one_or_none()

    def list_tests(
        self,
        status: Optional[ABTestStatus] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ABTestORM]:
        """Tests matching the filters, most recently created first."""
        stmt = select(ABTestORM).execution_options(populate_existing=True)

        if status is not None:
            stmt = stmt.where(ABTestORM.status == status)

        if operation is not None:
            stmt = stmt.where(ABTestORM.operation == operation)

        stmt = stmt.order_by(ABTestORM.created_at.desc())

        if limit:
            stmt = stmt.limit(limit)

        return list(self.db.scalars(stmt).all())

    def transition_status(
        self, test_id: str, from_statuses: Iterable[ABTestStatus], values: dict
    ) -> bool:
        """
        Conditionally updates a test whose status is still one of ``from_statuses``.

        Returns False when the row was not in an allowed status at write time.
        """
        stmt = (
            update(ABTestORM)
            .where(
                ABTestORM.test_id == test_id,
                ABTestORM.status.in_(list(from_statuses)),
            )
            .values(updated_at=utcnow(), **values)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("ab_test.transition_failed", test_id=test_id, error=str(e))
            raise

        return result.rowcount == 1

    def store_analysis(self, test_id: str, analysis: dict) -> None:
        stmt = (
            update(ABTestORM)
            .where(ABTestORM.test_id == test_id)
            .values(analysis=analysis, updated_at=utcnow())
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("ab_test.store_analysis_failed", test_id=test_id, error=str(e))
            raise

    def increment_total_assignments(self, test_id: str, amount: int = 1) -> None:
        """Atomic add on the test row. Does not commit."""
        self.db.execute(
            update(ABTestORM)
            .where(ABTestORM.test_id == test_id)
            .values(total_assignments=ABTestORM.total_assignments + amount)
        )

    def increment_variant_stats(self, test_id: str, variant_id: str, **deltas) -> None:
        """
        Atomic adds on one variant's counters, e.g. ``generations=1``.

        Issued as ``SET col = col + :delta`` so concurrent writers never lose
        updates. Does not commit.
        """
        unknown = set(deltas) - set(STAT_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown variant counters: {sorted(unknown)}")
        if not deltas:
            return

        values = {
            counter: getattr(VariantStatsORM, counter) + delta
            for counter, delta in deltas.items()
        }
        self.db.execute(
            update(VariantStatsORM)
            .where(
                VariantStatsORM.test_id == test_id,
                VariantStatsORM.variant_id == variant_id,
            )
            .values(**values)
        )

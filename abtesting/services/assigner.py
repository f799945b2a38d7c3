# services/assigner.py
from typing import Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from abtesting.core.flags import AB_TESTING_FLAG, FeatureFlagProvider
from abtesting.models.orm.ab_test import ABTestStatus, VariantORM
from abtesting.models.schemas.ab_test import VariantModel
from abtesting.repositories.ab_test_repo import ABTestRepository
from abtesting.repositories.assignment_repo import AssignmentRepository

logger = structlog.get_logger(__name__)

BUCKETS = 100


def hash_bucket(key: str) -> int:
    """
    Rolling hash ``h = h*31 + code`` truncated to a signed 32-bit integer,
    reduced to a bucket in [0, 100).

    Codes are UTF-16 code units, so characters outside the Basic Multilingual
    Plane contribute their surrogate pair.
    """
    encoded = key.encode("utf-16-le")
    value = 0
    for i in range(0, len(encoded), 2):
        code = int.from_bytes(encoded[i : i + 2], "little")
        value = (value * 31 + code) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value) % BUCKETS


def select_variant(variants: Sequence[VariantORM], bucket: int) -> VariantORM:
    """
    Walks the variants in order accumulating weights and returns the first
    whose cumulative weight exceeds ``bucket``. Falls back to the control.
    """
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if bucket < cumulative:
            return variant

    return next((v for v in variants if v.is_control), variants[0])


def matches_target_audience(user_id: str, target_audience: Optional[dict]) -> bool:
    """An empty or missing audience includes everyone."""
    if not target_audience:
        return True

    user_ids = target_audience.get("user_ids")
    if user_ids is not None and user_id not in user_ids:
        return False

    return True


class VariantAssigner:
    """
    Sticky variant assignment.

    ``hash_scope="test"`` buckets on ``"<test_id>:<user_id>"`` so a user's
    buckets are independent across concurrent tests; ``"user"`` buckets on the
    user id alone.
    """

    def __init__(self, db: Session, flags: FeatureFlagProvider, hash_scope: str = "test"):
        self.db = db
        self.flags = flags
        self.hash_scope = hash_scope
        self.test_repo = ABTestRepository(db)
        self.assignment_repo = AssignmentRepository(db)

    def hash_key(self, test_id: str, user_id: str) -> str:
        if self.hash_scope == "user":
            return user_id
        return f"{test_id}:{user_id}"

    def get_variant_for_user(self, test_id: str, user_id: str) -> Optional[VariantModel]:
        """
        Returns the user's variant, assigning one on first call.

        Returns None, never raises, when no experiment applies: the master
        switch is off, the test is unknown or not running, or the user is
        outside the target audience.
        """
        if not self.flags.is_enabled(AB_TESTING_FLAG):
            return None

        test_orm = self.test_repo.get_test(test_id)
        if test_orm is None or test_orm.status != ABTestStatus.RUNNING:
            return None

        if not matches_target_audience(user_id, test_orm.target_audience):
            return None

        variants_by_id = {v.variant_id: v for v in test_orm.variants}

        existing = self.assignment_repo.get_assignment(test_id, user_id)
        if existing is not None:
            return self._to_model(variants_by_id.get(existing.variant_id))

        if not test_orm.variants:
            return None

        variant = select_variant(
            test_orm.variants, hash_bucket(self.hash_key(test_id, user_id))
        )

        try:
            created = self.assignment_repo.create_assignment_if_absent(
                test_id=test_id, user_id=user_id, variant_id=variant.variant_id
            )
            # Only the write that created the assignment counts it
            if created:
                self.test_repo.increment_total_assignments(test_id)
                self.test_repo.increment_variant_stats(
                    test_id, variant.variant_id, assignments=1
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "assignment.persist_failed", test_id=test_id, user_id=user_id, error=str(e)
            )
            raise

        if not created:
            # Lost a race with a concurrent first request; theirs stands
            winner = self.assignment_repo.get_assignment(test_id, user_id)
            if winner is None:
                return None
            return self._to_model(variants_by_id.get(winner.variant_id))

        logger.debug(
            "assignment.created",
            test_id=test_id,
            user_id=user_id,
            variant_id=variant.variant_id,
        )
        return self._to_model(variant)

    @staticmethod
    def _to_model(variant: Optional[VariantORM]) -> Optional[VariantModel]:
        return VariantModel.model_validate(variant) if variant is not None else None

from typing import Optional

import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from abtesting.models.orm.assignment import AssignmentORM
from abtesting.models.orm.base import utcnow

logger = structlog.get_logger(__name__)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, test_id: str, user_id: str) -> Optional[AssignmentORM]:
        """Retrieves a persistent assignment for a user in a specific test."""
        stmt = select(AssignmentORM).where(
            AssignmentORM.test_id == test_id,
            AssignmentORM.user_id == user_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def create_assignment_if_absent(
        self, test_id: str, user_id: str, variant_id: str
    ) -> bool:
        """
        Inserts the assignment unless one already exists for (user_id, test_id).

        The insert runs inside a SAVEPOINT so a primary-key conflict only
        rolls back this statement. Returns True when this call created the
        row. Does not commit.
        """
        try:
            with self.db.begin_nested():
                self.db.execute(
                    insert(AssignmentORM).values(
                        test_id=test_id,
                        user_id=user_id,
                        variant_id=variant_id,
                        assigned_at=utcnow(),
                    )
                )
        except IntegrityError:
            logger.info(
                "assignment.already_exists", test_id=test_id, user_id=user_id
            )
            return False

        return True

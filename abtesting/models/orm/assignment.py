from sqlalchemy import Column, DateTime, ForeignKey, PrimaryKeyConstraint, String
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class AssignmentORM(Base):
    __tablename__ = "ab_test_assignments"

    user_id = Column(String, nullable=False, index=True)
    test_id = Column(String, ForeignKey("ab_tests.test_id"), nullable=False, index=True)
    # Not a foreign key: the assignment outlives any change to the variant list
    variant_id = Column(String, nullable=False)

    assigned_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("user_id", "test_id", name="assignment_pk"),)

    test = relationship("ABTestORM")

import enum

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from .base import JSON_TYPE, Base, utcnow


class EventType(str, enum.Enum):
    GENERATION = "generation"
    FEEDBACK = "feedback"
    ERROR = "error"
    # No aggregate; passed through for downstream consumers
    LATENCY = "latency"


class EventORM(Base):
    __tablename__ = "ab_test_events"

    event_id = Column(String, primary_key=True, index=True)

    test_id = Column(String, ForeignKey("ab_tests.test_id"), nullable=False, index=True)
    variant_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)

    event_type = Column(String, nullable=False, index=True)

    # Free-form numeric payload: latencyMs, qualityScore, rating, ...
    metrics = Column(JSON_TYPE, default=dict, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    test = relationship("ABTestORM")

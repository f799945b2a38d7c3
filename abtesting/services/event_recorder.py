# services/event_recorder.py
from datetime import datetime
from typing import Mapping, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from abtesting.core.errors import ABTestNotFound, InvalidEvent
from abtesting.core.flags import AB_TESTING_FLAG, FeatureFlagProvider
from abtesting.models.orm.ab_test import ABTestStatus
from abtesting.models.orm.event import EventORM, EventType
from abtesting.repositories.ab_test_repo import ABTestRepository
from abtesting.repositories.event_repo import EventRepository

logger = structlog.get_logger(__name__)


def counter_deltas(event_type: EventType, metrics: Mapping[str, float]) -> dict:
    """Aggregate counter increments implied by one event."""
    deltas = {}

    if event_type == EventType.GENERATION:
        deltas["generations"] = 1
        if metrics.get("latencyMs") is not None:
            deltas["total_latency_ms"] = metrics["latencyMs"]
        if metrics.get("qualityScore") is not None:
            deltas["total_quality_score"] = metrics["qualityScore"]

    elif event_type == EventType.FEEDBACK:
        deltas["feedback_count"] = 1
        if metrics.get("rating") is not None:
            deltas["total_feedback_score"] = metrics["rating"]

    elif event_type == EventType.ERROR:
        deltas["errors"] = 1

    return deltas


class EventRecorder:
    def __init__(self, db: Session, flags: FeatureFlagProvider):
        """Initializes the service with repositories it needs."""
        self.db = db
        self.flags = flags
        self.test_repo = ABTestRepository(db)
        self.event_repo = EventRepository(db)

    def record_event(
        self,
        test_id: str,
        variant_id: str,
        user_id: str,
        event_type: str,
        metrics: Optional[Mapping[str, float]] = None,
    ) -> Optional[str]:
        """
        Appends an outcome event and updates the variant's aggregate counters.

        Returns the new event id, or None when skipped because the master
        switch is off or the test is not running. Not idempotent: every call
        counts.
        """
        if not self.flags.is_enabled(AB_TESTING_FLAG):
            return None

        metrics = dict(metrics or {})

        try:
            parsed_type = EventType(event_type)
        except ValueError:
            raise InvalidEvent(f"Unknown event type: {event_type}")

        test_orm = self.test_repo.get_test(test_id)
        if test_orm is None:
            raise ABTestNotFound(test_id)

        if variant_id not in {v.variant_id for v in test_orm.variants}:
            raise InvalidEvent(f"Unknown variant {variant_id} for test {test_id}")

        if test_orm.status != ABTestStatus.RUNNING:
            return None

        try:
            event = self.event_repo.add_event(
                test_id=test_id,
                variant_id=variant_id,
                user_id=user_id,
                event_type=parsed_type.value,
                metrics=metrics,
            )
            self.test_repo.increment_variant_stats(
                test_id, variant_id, **counter_deltas(parsed_type, metrics)
            )
            event_id = event.event_id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "event.record_failed",
                test_id=test_id,
                variant_id=variant_id,
                event_type=parsed_type.value,
                error=str(e),
            )
            raise

        return event_id

    def list_events(
        self,
        test_id: str,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[EventORM]:
        """Raw event log for external reporting, oldest first."""
        if self.test_repo.get_test(test_id) is None:
            raise ABTestNotFound(test_id)

        return self.event_repo.get_events_for_test(
            test_id,
            event_type=event_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )

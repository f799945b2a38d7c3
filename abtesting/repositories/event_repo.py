from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from abtesting.core.ids import generate_id
from abtesting.models.orm.base import utcnow
from abtesting.models.orm.event import EventORM


class EventRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def get_events_for_test(
        self,
        test_id: str,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[EventORM]:
        """
        Retrieves events for a specific test, applying optional filters
        for event type and time range. Oldest first.
        """
        stmt = select(EventORM).where(EventORM.test_id == test_id)

        if event_type:
            stmt = stmt.where(EventORM.event_type == event_type)

        if start_date:
            stmt = stmt.where(EventORM.created_at >= start_date)

        if end_date:
            stmt = stmt.where(EventORM.created_at <= end_date)

        stmt = stmt.order_by(EventORM.created_at)

        if limit:
            stmt = stmt.limit(limit)

        return list(self.db.scalars(stmt).all())

    def add_event(
        self,
        test_id: str,
        variant_id: str,
        user_id: str,
        event_type: str,
        metrics: dict,
    ) -> EventORM:
        """Stages an append-only event record. Does not commit."""
        db_event = EventORM(
            event_id=generate_id("evt"),
            test_id=test_id,
            variant_id=variant_id,
            user_id=user_id,
            event_type=event_type,
            metrics=dict(metrics),
            created_at=utcnow(),
        )
        self.db.add(db_event)
        return db_event

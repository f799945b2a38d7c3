"""
Pytest fixtures for the A/B testing engine.

Every test gets a fresh in-memory SQLite database shared through a StaticPool,
so the FastAPI threadpool and the test body see the same connection.
"""

from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from abtesting.core.flags import AB_TESTING_FLAG, StaticFeatureFlags
from abtesting.models.orm import ab_test, assignment, event  # noqa: F401
from abtesting.models.orm.base import Base
from abtesting.models.schemas.ab_test import (
    ABTestCreateModel,
    ABTestModel,
    ABTestResultsModel,
    VariantModel,
    VariantStatsModel,
)
from abtesting.services.assigner import VariantAssigner
from abtesting.services.event_recorder import EventRecorder
from abtesting.services.registry import ABTestRegistry


@pytest.fixture
def engine():
    """Create test database engine with in-memory SQLite."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def flags() -> StaticFeatureFlags:
    return StaticFeatureFlags({AB_TESTING_FLAG})


@pytest.fixture
def registry(db) -> ABTestRegistry:
    return ABTestRegistry(db)


@pytest.fixture
def assigner(db, flags) -> VariantAssigner:
    return VariantAssigner(db, flags)


@pytest.fixture
def recorder(db, flags) -> EventRecorder:
    return EventRecorder(db, flags)


@pytest.fixture
def make_config():
    """Factory for create_test payloads."""

    def _make_config(weights=(50, 50), operation="narrativeGeneration", **overrides):
        payload = {
            "name": "Prompt v2 vs v1",
            "operation": operation,
            "variants": [
                {"name": f"arm-{i}", "weight": weight} for i, weight in enumerate(weights)
            ],
        }
        payload.update(overrides)
        return ABTestCreateModel.model_validate(payload)

    return _make_config


@pytest.fixture
def running_test(registry, make_config) -> ABTestModel:
    test = registry.create_test(make_config())
    return registry.start_test(test.test_id)


def build_test_model(
    stats: dict[str, dict], variant_ids: Optional[list[str]] = None
) -> ABTestModel:
    """A detached test read model with the given per-variant counters."""
    variant_ids = variant_ids or list(stats)
    return ABTestModel(
        test_id="test_fixture",
        name="fixture",
        test_type="model",
        operation="narrativeGeneration",
        status="running",
        variants=[
            VariantModel(
                variant_id=variant_id,
                name=variant_id,
                weight=100 // len(variant_ids),
                is_control=i == 0,
            )
            for i, variant_id in enumerate(variant_ids)
        ],
        results=ABTestResultsModel(
            variant_stats={
                variant_id: VariantStatsModel(**counters)
                for variant_id, counters in stats.items()
            }
        ),
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def make_test_model():
    return build_test_model

# services/registry.py
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from abtesting.core.errors import ABTestNotFound, InvalidConfiguration, InvalidStateTransition
from abtesting.core.ids import generate_id
from abtesting.models.orm.ab_test import ABTestORM, ABTestStatus
from abtesting.models.orm.base import utcnow
from abtesting.models.schemas.ab_test import (
    ABTestCreateModel,
    ABTestModel,
    ABTestResultsModel,
    ABTestResultsResponseModel,
    VariantModel,
    VariantStatsModel,
)
from abtesting.models.schemas.analysis import AnalysisModel
from abtesting.repositories.ab_test_repo import ABTestRepository
from abtesting.services.significance import analyze_results

logger = structlog.get_logger(__name__)

TOTAL_WEIGHT = 100

# action -> statuses it may be applied from
ALLOWED_TRANSITIONS = {
    "start": (ABTestStatus.DRAFT, ABTestStatus.PAUSED),
    "pause": (ABTestStatus.RUNNING,),
    "stop": (ABTestStatus.DRAFT, ABTestStatus.RUNNING, ABTestStatus.PAUSED),
    "archive": (ABTestStatus.COMPLETED,),
}


def normalize_weights(weights: list[int]) -> list[int]:
    """
    Returns the weights unchanged when they sum to 100, otherwise an even
    split with the remainder added to the first (control) variant.
    """
    if sum(weights) == TOTAL_WEIGHT:
        return list(weights)

    even_weight = TOTAL_WEIGHT // len(weights)
    remainder = TOTAL_WEIGHT - even_weight * len(weights)
    return [even_weight + (remainder if i == 0 else 0) for i in range(len(weights))]


def variant_id_for(position: int) -> str:
    return "control" if position == 0 else f"variant_{position}"


def to_test_model(test_orm: ABTestORM) -> ABTestModel:
    """Builds the read model, results block included, from a loaded row."""
    variant_stats = {
        stats.variant_id: VariantStatsModel.model_validate(stats)
        for stats in test_orm.variant_stats
    }
    analysis = (
        AnalysisModel.model_validate(test_orm.analysis) if test_orm.analysis else None
    )

    return ABTestModel(
        test_id=test_orm.test_id,
        name=test_orm.name,
        description=test_orm.description or "",
        test_type=test_orm.test_type,
        operation=test_orm.operation,
        status=test_orm.status,
        variants=[VariantModel.model_validate(v) for v in test_orm.variants],
        target_audience=test_orm.target_audience or {},
        metrics=test_orm.metrics or [],
        results=ABTestResultsModel(
            total_assignments=test_orm.total_assignments,
            variant_stats=variant_stats,
            analysis=analysis,
        ),
        created_at=test_orm.created_at,
        updated_at=test_orm.updated_at,
        started_at=test_orm.started_at,
        completed_at=test_orm.completed_at,
    )


class ABTestRegistry:
    """Owns test definitions and their lifecycle."""

    def __init__(self, db: Session):
        self.test_repo = ABTestRepository(db)

    def create_test(self, test_data: ABTestCreateModel) -> ABTestModel:
        """
        Creates a draft test.

        Requires at least two variants. Weights that do not sum to exactly 100
        are replaced by an even split. Variant ids are assigned by position and
        the first variant is always the control.
        """
        if len(test_data.variants) < 2:
            raise InvalidConfiguration("A/B test must have at least 2 variants")

        weights = normalize_weights([v.weight for v in test_data.variants])
        if weights != [v.weight for v in test_data.variants]:
            logger.info(
                "ab_test.weights_normalized",
                supplied=[v.weight for v in test_data.variants],
                normalized=weights,
            )

        variants = [
            {
                "variant_id": variant_id_for(position),
                "position": position,
                "name": variant.name,
                "weight": weights[position],
                "is_control": position == 0,
                "config": variant.config,
            }
            for position, variant in enumerate(test_data.variants)
        ]

        test_fields = {
            "test_id": generate_id("test"),
            "name": test_data.name,
            "description": test_data.description or "",
            "test_type": test_data.test_type,
            "operation": test_data.operation,
            "status": ABTestStatus.DRAFT,
            "target_audience": test_data.target_audience.model_dump(exclude_none=True),
            "metrics": list(test_data.metrics),
            "total_assignments": 0,
            "created_at": utcnow(),
        }

        test_orm = self.test_repo.create_test(test_fields, variants)
        logger.info(
            "ab_test.created",
            test_id=test_orm.test_id,
            operation=test_orm.operation,
            variants=len(variants),
        )
        return to_test_model(test_orm)

    def get_test(self, test_id: str) -> Optional[ABTestModel]:
        test_orm = self.test_repo.get_test(test_id)
        return to_test_model(test_orm) if test_orm else None

    def list_tests(
        self,
        status: Optional[ABTestStatus] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ABTestModel]:
        return [
            to_test_model(test_orm)
            for test_orm in self.test_repo.list_tests(status, operation, limit)
        ]

    def _require_test(self, test_id: str) -> ABTestORM:
        test_orm = self.test_repo.get_test(test_id)
        if test_orm is None:
            raise ABTestNotFound(test_id)
        return test_orm

    def _transition(self, test_id: str, action: str, values: dict) -> ABTestModel:
        old_status = self._require_test(test_id).status
        from_statuses = ALLOWED_TRANSITIONS[action]

        if old_status not in from_statuses:
            raise InvalidStateTransition(test_id, old_status.value, action)

        # Conditional write: fails if another request moved the test meanwhile
        if not self.test_repo.transition_status(test_id, from_statuses, values):
            current = self._require_test(test_id)
            raise InvalidStateTransition(test_id, current.status.value, action)

        logger.info(
            "ab_test.status_changed",
            test_id=test_id,
            action=action,
            old_status=old_status.value,
            new_status=values["status"].value,
        )
        return to_test_model(self._require_test(test_id))

    def start_test(self, test_id: str) -> ABTestModel:
        test_orm = self._require_test(test_id)
        values = {"status": ABTestStatus.RUNNING}
        # started_at is set on the first start only, never on resume
        if test_orm.started_at is None:
            values["started_at"] = utcnow()
        return self._transition(test_id, "start", values)

    def pause_test(self, test_id: str) -> ABTestModel:
        return self._transition(test_id, "pause", {"status": ABTestStatus.PAUSED})

    def stop_test(self, test_id: str) -> ABTestModel:
        """
        Completes the test and stores a final analysis under results.analysis.

        The analysis is computed after the status change, from counters
        re-read once the test has left ``running``.
        """
        stopped = self._transition(
            test_id,
            "stop",
            {"status": ABTestStatus.COMPLETED, "completed_at": utcnow()},
        )

        analysis = analyze_results(stopped)
        self.test_repo.store_analysis(test_id, analysis.model_dump(mode="json"))
        return to_test_model(self._require_test(test_id))

    def archive_test(self, test_id: str) -> ABTestModel:
        return self._transition(test_id, "archive", {"status": ABTestStatus.ARCHIVED})

    def get_test_results(self, test_id: str) -> ABTestResultsResponseModel:
        """Current counters with a freshly computed analysis."""
        test = self.get_test(test_id)
        if test is None:
            raise ABTestNotFound(test_id)

        return ABTestResultsResponseModel(
            test_id=test.test_id,
            name=test.name,
            status=test.status,
            started_at=test.started_at,
            completed_at=test.completed_at,
            total_assignments=test.results.total_assignments,
            analysis=analyze_results(test),
        )

    def get_active_test_for_operation(self, operation: str) -> Optional[ABTestModel]:
        """The most recently created running test for ``operation``, if any."""
        tests = self.list_tests(status=ABTestStatus.RUNNING, operation=operation, limit=1)
        return tests[0] if tests else None

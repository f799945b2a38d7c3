from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette import status

from abtesting.core.auth import require_auth_token
from abtesting.core.db import get_db, init_db
from abtesting.core.errors import (
    ABTestingError,
    ABTestNotFound,
    InvalidConfiguration,
    InvalidEvent,
    InvalidStateTransition,
)
from abtesting.core.flags import AB_TESTING_FLAG, FeatureFlagProvider, get_feature_flags
from abtesting.core.log_config import configure_logging
from abtesting.core.settings import Settings, get_settings
from abtesting.models.orm.ab_test import ABTestStatus
from abtesting.models.schemas.ab_test import (
    ABTestCreateModel,
    ABTestModel,
    ABTestResultsResponseModel,
)
from abtesting.models.schemas.assignment import VariantAssignmentResponseModel
from abtesting.models.schemas.event import EventCreateModel, EventModel, EventResponseModel
from abtesting.services.assigner import VariantAssigner
from abtesting.services.event_recorder import EventRecorder
from abtesting.services.registry import ABTestRegistry

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    InvalidConfiguration: status.HTTP_400_BAD_REQUEST,
    InvalidEvent: status.HTTP_400_BAD_REQUEST,
    ABTestNotFound: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    init_db()
    yield


app = FastAPI(
    title="A/B testing engine",
    description="Sticky variant assignment, outcome events and significance analysis",
    version="0.1.0",
    dependencies=[Depends(require_auth_token)],
    lifespan=lifespan,
)


@app.exception_handler(ABTestingError)
async def ab_testing_error_handler(request: Request, exc: ABTestingError):
    status_code = ERROR_STATUS_CODES.get(
        type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    logger.info(
        "request.rejected",
        path=request.url.path,
        error=type(exc).__name__,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.post(
    "/ab-tests",
    response_model=ABTestModel,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft A/B test",
)
def post_ab_tests(
    test_data: ABTestCreateModel,
    db: Session = Depends(get_db),
    flags: FeatureFlagProvider = Depends(get_feature_flags),
):
    if not flags.is_enabled(AB_TESTING_FLAG):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="A/B testing is currently disabled",
        )
    return ABTestRegistry(db).create_test(test_data)


@app.get("/ab-tests", response_model=list[ABTestModel], summary="List A/B tests")
def get_ab_tests(
    test_status: Optional[ABTestStatus] = Query(None, alias="status"),
    operation: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return ABTestRegistry(db).list_tests(
        status=test_status, operation=operation, limit=limit
    )


@app.get("/ab-tests/{test_id}", response_model=ABTestModel, summary="Get an A/B test")
def get_ab_test(
    test_id: str = Path(..., description="The ID of the test."),
    db: Session = Depends(get_db),
):
    test = ABTestRegistry(db).get_test(test_id)
    if test is None:
        raise ABTestNotFound(test_id)
    return test


@app.post("/ab-tests/{test_id}/start", response_model=ABTestModel)
def start_ab_test(test_id: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).start_test(test_id)


@app.post("/ab-tests/{test_id}/pause", response_model=ABTestModel)
def pause_ab_test(test_id: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).pause_test(test_id)


@app.post(
    "/ab-tests/{test_id}/stop",
    response_model=ABTestModel,
    summary="Complete a test and store its final analysis",
)
def stop_ab_test(test_id: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).stop_test(test_id)


@app.post("/ab-tests/{test_id}/archive", response_model=ABTestModel)
def archive_ab_test(test_id: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).archive_test(test_id)


@app.get(
    "/ab-tests/{test_id}/results",
    response_model=ABTestResultsResponseModel,
    summary="Get statistics and a recommendation for a test",
)
def get_ab_test_results(test_id: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).get_test_results(test_id)


@app.get(
    "/ab-tests/{test_id}/events",
    response_model=list[EventModel],
    summary="Raw event log for a test",
)
def get_ab_test_events(
    test_id: str,
    event_type: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    flags: FeatureFlagProvider = Depends(get_feature_flags),
):
    return EventRecorder(db, flags).list_events(
        test_id,
        event_type=event_type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )


@app.get(
    "/ab-tests/{test_id}/assignment/{user_id}",
    response_model=VariantAssignmentResponseModel,
    summary="Get user assignment",
)
def get_user_variant_assignment(
    test_id: str = Path(..., description="The ID of the test."),
    user_id: str = Path(..., description="The ID of the user."),
    db: Session = Depends(get_db),
    flags: FeatureFlagProvider = Depends(get_feature_flags),
    settings: Settings = Depends(get_settings),
):
    """
    Retrieves a user's variant. If no assignment exists, a new, persistent
    assignment is made from the test's traffic weights. ``variant`` is null
    when no experiment applies to this user.
    """
    assigner = VariantAssigner(db, flags, hash_scope=settings.ASSIGNMENT_HASH_SCOPE)
    variant = assigner.get_variant_for_user(test_id, user_id)
    return VariantAssignmentResponseModel(test_id=test_id, user_id=user_id, variant=variant)


@app.post(
    "/events",
    response_model=EventResponseModel,
    status_code=status.HTTP_201_CREATED,
    summary="Record an outcome event.",
)
def post_events(
    event_data: EventCreateModel,
    db: Session = Depends(get_db),
    flags: FeatureFlagProvider = Depends(get_feature_flags),
):
    event_id = EventRecorder(db, flags).record_event(
        test_id=event_data.test_id,
        variant_id=event_data.variant_id,
        user_id=event_data.user_id,
        event_type=event_data.event_type,
        metrics=event_data.metrics,
    )
    return EventResponseModel(
        test_id=event_data.test_id, event_id=event_id, recorded=event_id is not None
    )


@app.get(
    "/operations/{operation}/active-test",
    response_model=Optional[ABTestModel],
    summary="The running test for an operation, if any",
)
def get_active_test_for_operation(operation: str, db: Session = Depends(get_db)):
    return ABTestRegistry(db).get_active_test_for_operation(operation)


# Entry point for running the application directly (local development)
if __name__ == "__main__":
    uvicorn.run("abtesting.main:app", host="0.0.0.0", port=8000, reload=True)

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
import logging

from supplier_intake.database import get_db
from supplier_intake.enums import OperationStatus, OperationType
from supplier_intake.schemas.recovery import RecoveryQueuePage, RecoveryStats, RetryNowResponse
from supplier_intake.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recovery", tags=["recovery"])


@router.get("/queue", response_model=RecoveryQueuePage)
def get_recovery_queue(
    operation_type: Optional[OperationType] = Query(None, description="Filter by failed stage"),
    status: Optional[OperationStatus] = Query(None, description="Filter by status; resolved operations only when asked for"),
    submission_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Failed operations awaiting recovery, soonest retry first"""
    items, total = pipeline.recovery.list_queue(
        db,
        operation_type=operation_type.value if operation_type else None,
        status=status.value if status else None,
        submission_id=submission_id,
        page=page,
        limit=limit,
    )
    return RecoveryQueuePage(items=items, total=total, page=page, limit=limit)


@router.get("/stats", response_model=RecoveryStats)
def get_recovery_stats(db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.recovery.get_stats(db)


@router.post("/retry/{submission_id}", response_model=RetryNowResponse)
async def retry_submission(
    submission_id: UUID,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Retry every failed stage of a submission now, ignoring the backoff schedule"""
    result = await pipeline.recovery.retry_now(db, submission_id)
    logger.info(
        f"Manual retry of submission {submission_id}: {result.attempts} attempt(s), "
        f"{'succeeded' if result.succeeded else 'still failing'}"
    )
    return result

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
import logging

from supplier_intake.database import get_db
from supplier_intake.enums import ContentType, ProcessingStatus, ValidationStatus
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.submission import Submission
from supplier_intake.schemas.submission import (
    ProcessResponse,
    SubmissionDetailResponse,
    SubmissionListResponse,
    SubmissionPage,
)
from supplier_intake.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/submissions", tags=["submissions"])


@router.get("", response_model=SubmissionPage)
def list_submissions(
    processing_status: Optional[ProcessingStatus] = Query(None, description="Filter by processing status"),
    validation_status: Optional[ValidationStatus] = Query(None, description="Filter by validation status"),
    supplier_id: Optional[str] = Query(None, description="Filter by supplier ID"),
    content_type: Optional[ContentType] = Query(None, description="Filter by content type"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """List submissions, newest first"""
    query = db.query(Submission)

    if processing_status:
        query = query.filter(Submission.processing_status == processing_status.value)
    if validation_status:
        query = query.filter(Submission.validation_status == validation_status.value)
    if supplier_id:
        query = query.filter(Submission.supplier_id == supplier_id)
    if content_type:
        query = query.filter(Submission.content_type == content_type.value)

    total = query.count()
    submissions = query.order_by(Submission.created_at.desc()).offset((page - 1) * limit).limit(limit).all()

    # Product counts in one query
    counts = {}
    if submissions:
        counts = dict(
            db.query(ExtractedProduct.submission_id, func.count(ExtractedProduct.id))
            .filter(ExtractedProduct.submission_id.in_([s.id for s in submissions]))
            .group_by(ExtractedProduct.submission_id)
            .all()
        )

    items = []
    for submission in submissions:
        item = SubmissionListResponse.model_validate(submission)
        item.product_count = counts.get(submission.id, 0)
        items.append(item)

    return SubmissionPage(items=items, total=total, page=page, limit=limit)


@router.get("/{submission_id}", response_model=SubmissionDetailResponse)
def get_submission(
    submission_id: UUID,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Get submission detail with extracted products"""
    return pipeline.worker.get_submission(db, submission_id)


@router.post("/{submission_id}/process", response_model=ProcessResponse)
async def process_submission(
    submission_id: UUID,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Run extraction for a pending submission now.

    Extraction failures are not errors here: the submission comes back failed
    and the retry is queued for recovery.
    """
    products = await pipeline.worker.process(db, submission_id)
    submission = pipeline.worker.get_submission(db, submission_id)
    db.refresh(submission)
    return ProcessResponse(
        submission=SubmissionDetailResponse.model_validate(submission),
        products_extracted=len(products),
    )


@router.post("/{submission_id}/reprocess", response_model=ProcessResponse)
async def reprocess_submission(
    submission_id: UUID,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Reset a failed submission and extract again"""
    products = await pipeline.worker.reprocess(db, submission_id)
    submission = pipeline.worker.get_submission(db, submission_id)
    db.refresh(submission)
    return ProcessResponse(
        submission=SubmissionDetailResponse.model_validate(submission),
        products_extracted=len(products),
    )

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
import logging

from supplier_intake.database import get_db
from supplier_intake.enums import ContentType, Priority
from supplier_intake.schemas.validation import (
    ApproveRequest,
    BulkApproveRequest,
    BulkRejectRequest,
    BulkResult,
    FeedbackCategoryInfo,
    RejectRequest,
    ValidationFilters,
    ValidationItemResponse,
    ValidationQueuePage,
    ValidationStats,
)
from supplier_intake.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/validations", tags=["validations"])


@router.get("", response_model=ValidationQueuePage)
def list_pending_validations(
    supplier_id: Optional[str] = Query(None, description="Filter by supplier ID"),
    content_type: Optional[ContentType] = Query(None, description="Filter by content type"),
    priority: Optional[Priority] = Query(None, description="Filter by priority"),
    min_confidence: Optional[float] = Query(None, ge=0, le=100),
    max_confidence: Optional[float] = Query(None, ge=0, le=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Pending review queue: priority, then lowest confidence, then oldest"""
    filters = ValidationFilters(
        supplier_id=supplier_id,
        content_type=content_type.value if content_type else None,
        priority=priority,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        page=page,
        limit=limit,
    )
    items, total = pipeline.validation.list_pending(db, filters)
    return ValidationQueuePage(items=items, total=total, page=page, limit=limit)


@router.get("/stats", response_model=ValidationStats)
def get_validation_stats(db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.validation.get_stats(db)


@router.get("/feedback-categories", response_model=List[FeedbackCategoryInfo])
def list_feedback_categories(pipeline: Pipeline = Depends(get_pipeline)):
    """Reject reason categories and their subcategories"""
    return pipeline.validation.feedback_categories()


@router.get("/{item_id}", response_model=ValidationItemResponse)
def get_validation_item(item_id: UUID, db: Session = Depends(get_db), pipeline: Pipeline = Depends(get_pipeline)):
    return pipeline.validation.get_item(db, item_id)


@router.post("/bulk-approve", response_model=BulkResult)
async def bulk_approve(
    request: BulkApproveRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Approve many items; each id succeeds or fails on its own"""
    return await pipeline.validation.bulk_approve(db, request.ids, reviewer=request.reviewer, notes=request.notes)


@router.post("/bulk-reject", response_model=BulkResult)
async def bulk_reject(
    request: BulkRejectRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await pipeline.validation.bulk_reject(db, request.ids, request.feedback, reviewer=request.reviewer)


@router.post("/{item_id}/approve", response_model=ValidationItemResponse)
async def approve_item(
    item_id: UUID,
    request: ApproveRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Approve a pending item, optionally editing the product first"""
    return await pipeline.validation.approve(
        db, item_id, reviewer=request.reviewer, notes=request.notes, edits=request.edits
    )


@router.post("/{item_id}/reject", response_model=ValidationItemResponse)
async def reject_item(
    item_id: UUID,
    request: RejectRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Reject a pending item with structured feedback"""
    return await pipeline.validation.reject(db, item_id, request.feedback, reviewer=request.reviewer)

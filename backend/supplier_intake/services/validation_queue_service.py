"""
Validation Queue Service - human review of sub-threshold extracted products.

Routes freshly extracted submissions (auto-approve or queue), serves the
pending queue riskiest-first, and applies approve/reject decisions. Every
decision is a conditional UPDATE on the item's pending status, so two
reviewers can never both decide the same item.

A submission that does not qualify for auto-approval is settled by its
reviewers: it stays pending until its last item is decided, then becomes
approved when at least one item was approved and rejected when all were.
Its products that cleared the threshold wait for that outcome and are only
pushed to the catalog when the submission is approved.
"""
import logging
from collections import Counter
from datetime import datetime, time as dt_time
from statistics import mean
from typing import Iterable, List, Optional, Tuple, Union
from uuid import UUID
from pydantic import ValidationError
from sqlalchemy.orm import Session

from supplier_intake.enums import (
    FeedbackCategory,
    OperationStatus,
    OperationType,
    Priority,
    PRIORITY_RANK,
    ProcessingStatus,
    ValidationStatus,
)
from supplier_intake.errors import (
    BusinessRuleViolation,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PipelineError,
)
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.models.submission import Submission
from supplier_intake.models.validation_item import ValidationItem
from supplier_intake.schemas.dashboard import SupplierPerformance
from supplier_intake.schemas.validation import (
    BulkFailure,
    BulkResult,
    FeedbackCategoryInfo,
    ProductEdits,
    ValidationFeedback,
    ValidationFilters,
    ValidationStats,
)
from supplier_intake.services.inventory_service import InventoryService
from supplier_intake.services.supplier_performance_service import SupplierPerformanceService
from supplier_intake.utils.clock import utcnow

logger = logging.getLogger(__name__)

FEEDBACK_CATEGORIES = [
    FeedbackCategoryInfo(
        id=FeedbackCategory.EXTRACTION_ERROR.value,
        name="Extraction Error",
        description="AI failed to extract correct information",
        subcategories=["incorrect_product_name", "wrong_price", "missing_specifications", "incorrect_category", "wrong_brand"],
    ),
    FeedbackCategoryInfo(
        id=FeedbackCategory.POOR_QUALITY.value,
        name="Poor Quality Content",
        description="Original content quality issues",
        subcategories=["blurry_image", "incomplete_information", "unclear_text", "corrupted_file"],
    ),
    FeedbackCategoryInfo(
        id=FeedbackCategory.DUPLICATE_PRODUCT.value,
        name="Duplicate Product",
        description="Product already exists in the catalog",
        subcategories=["exact_duplicate", "similar_product", "variant_exists"],
    ),
    FeedbackCategoryInfo(
        id=FeedbackCategory.INVALID_CONTENT.value,
        name="Invalid Content",
        description="Content does not contain valid product information",
        subcategories=["not_a_product", "spam_content", "test_message", "personal_message"],
    ),
    FeedbackCategoryInfo(
        id=FeedbackCategory.POLICY_VIOLATION.value,
        name="Policy Violation",
        description="Content violates platform policies",
        subcategories=["prohibited_item", "inappropriate_content", "copyright_violation"],
    ),
]
SUBCATEGORIES = {info.id: set(info.subcategories) for info in FEEDBACK_CATEGORIES}

PRIORITY_LADDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH]


class ValidationQueueService:
    """Review queue for extracted products below the auto-approve threshold"""

    def __init__(
        self,
        inventory: InventoryService,
        suppliers: Optional[SupplierPerformanceService] = None,
        auto_approve_threshold: float = 85.0,
        auto_approve_policy: str = "all",
        weak_supplier_threshold: float = 95.0,
        min_supplier_history: int = 10,
        min_supplier_approval_rate: float = 0.9,
        high_confidence_below: float = 50.0,
        medium_confidence_below: float = 70.0,
        high_value: float = 500000,
        medium_value: float = 100000,
        escalate_weak_suppliers: bool = True,
    ):
        if auto_approve_policy not in ("all", "mean"):
            raise ValueError(f"Unknown auto-approve policy: {auto_approve_policy}")
        self.inventory = inventory
        self.suppliers = suppliers
        self.threshold = auto_approve_threshold
        self.policy = auto_approve_policy
        self.weak_supplier_threshold = max(weak_supplier_threshold, auto_approve_threshold)
        self.min_supplier_history = min_supplier_history
        self.min_supplier_approval_rate = min_supplier_approval_rate
        self.high_confidence_below = high_confidence_below
        self.medium_confidence_below = medium_confidence_below
        self.high_value = high_value
        self.medium_value = medium_value
        self.escalate_weak_suppliers = escalate_weak_suppliers

    # Routing

    def is_weak_supplier(self, performance: Optional[SupplierPerformance]) -> bool:
        """
        Weak while the supplier has fewer decided submissions than
        min_supplier_history, or once its approval rate drops under
        min_supplier_approval_rate. A supplier with no decision yet is only
        weak when some history is required.
        """
        decided = performance.approved + performance.rejected if performance else 0
        if decided < self.min_supplier_history:
            return True
        return decided > 0 and performance.approval_rate < self.min_supplier_approval_rate

    def threshold_for(self, weak_supplier: bool) -> float:
        return self.weak_supplier_threshold if weak_supplier else self.threshold

    def qualifies_for_auto_approval(self, confidences: Iterable[float], threshold: Optional[float] = None) -> bool:
        """
        Whole-submission auto-approval check.

        Policy 'all' requires every product to clear the threshold, 'mean'
        requires the mean confidence to.
        """
        threshold = self.threshold if threshold is None else threshold
        confidences = list(confidences)
        if not confidences:
            return False
        if self.policy == "mean":
            return mean(confidences) >= threshold
        return min(confidences) >= threshold

    def calculate_priority(self, confidence: float, value: Optional[float], weak_supplier: bool = False) -> Priority:
        """
        Priority levels:
        - high: confidence under high_confidence_below, or price x quantity at/above high_value
        - medium: confidence under medium_confidence_below, or value at/above medium_value
        - low: everything else

        Items from a weak supplier move one level up.
        """
        if confidence < self.high_confidence_below or (value is not None and value >= self.high_value):
            priority = Priority.HIGH
        elif confidence < self.medium_confidence_below or (value is not None and value >= self.medium_value):
            priority = Priority.MEDIUM
        else:
            priority = Priority.LOW
        if weak_supplier and self.escalate_weak_suppliers:
            priority = PRIORITY_LADDER[min(PRIORITY_LADDER.index(priority) + 1, len(PRIORITY_LADDER) - 1)]
        return priority

    def _supplier_is_weak(self, db: Session, supplier_id: str) -> bool:
        if self.suppliers is None:
            return False
        return self.is_weak_supplier(self.suppliers.find_performance(db, supplier_id))

    async def route_submission(self, db: Session, submission_id: UUID) -> dict:
        """
        Send a completed submission's products to auto-approval or review.

        A qualifying submission is approved and every product pushed to the
        catalog. Otherwise the products under the threshold get a
        ValidationItem and the rest wait for the review outcome.
        Safe to re-run: existing items and pushed products are skipped.
        """
        submission = db.query(Submission).filter(Submission.id == submission_id).first()
        if not submission:
            raise NotFound(f"Submission {submission_id} not found")
        if submission.processing_status != ProcessingStatus.COMPLETED.value:
            raise InvalidStateTransition(
                f"Submission {submission_id} is {submission.processing_status}; only completed submissions are routed"
            )
        products = list(submission.products)
        if not products:
            raise BusinessRuleViolation(f"Submission {submission_id} has no extracted products to route")

        now = utcnow()
        queued_ids = {item.extracted_product_id for item in submission.validation_items}
        pending_push_ids = {
            row.extracted_product_id
            for row in db.query(FailedOperation.extracted_product_id).filter(
                FailedOperation.submission_id == submission_id,
                FailedOperation.operation_type == OperationType.INVENTORY_UPDATE.value,
                FailedOperation.status != OperationStatus.SUCCEEDED.value,
            )
        }

        weak_supplier = self._supplier_is_weak(db, submission.supplier_id)
        threshold = self.threshold_for(weak_supplier)
        # Once reviewers hold items the outcome is theirs
        auto_approve = not queued_ids and self.qualifies_for_auto_approval(
            (p.confidence_score for p in products), threshold
        )
        to_push = []
        queued = 0
        for product in products:
            if auto_approve:
                product.auto_approved = True
                if not product.catalog_product_id and product.id not in pending_push_ids:
                    to_push.append(product)
            elif product.confidence_score < threshold and product.id not in queued_ids:
                value = float(product.price) * (product.quantity or 1) if product.price is not None else None
                priority = self.calculate_priority(product.confidence_score, value, weak_supplier)
                db.add(ValidationItem(
                    submission_id=submission.id,
                    extracted_product_id=product.id,
                    supplier_id=submission.supplier_id,
                    supplier_name=submission.supplier_name,
                    content_type=submission.content_type,
                    confidence_score=product.confidence_score,
                    auto_approve_threshold=threshold,
                    priority=priority.value,
                    priority_rank=PRIORITY_RANK[priority],
                    status=ValidationStatus.PENDING.value,
                    submitted_at=submission.created_at,
                ))
                queued += 1

        if auto_approve and submission.validation_status == ValidationStatus.PENDING.value:
            submission.validation_status = ValidationStatus.APPROVED.value
            submission.auto_approved = True
            submission.validated_by = "system"
            submission.validated_at = now
        db.commit()

        if auto_approve:
            logger.info(f"Submission {submission_id} auto-approved ({len(products)} product(s))")
        else:
            logger.info(
                f"Submission {submission_id} queued {queued} product(s) for review"
                f"{' (weak supplier history)' if weak_supplier else ''}"
            )

        for product in to_push:
            await self.inventory.push_product(db, product)

        return {"auto_approved": auto_approve, "queued": queued, "pushed": len(to_push)}

    # Queue

    def _pending_query(self, db: Session):
        return (
            db.query(ValidationItem)
            .join(Submission, Submission.id == ValidationItem.submission_id)
            .filter(
                ValidationItem.status == ValidationStatus.PENDING.value,
                ValidationItem.confidence_score < ValidationItem.auto_approve_threshold,
                Submission.validation_status == ValidationStatus.PENDING.value,
            )
        )

    def list_pending(self, db: Session, filters: ValidationFilters) -> Tuple[List[ValidationItem], int]:
        """Pending items, highest priority first, then lowest confidence, then oldest"""
        query = self._pending_query(db)
        if filters.supplier_id:
            query = query.filter(ValidationItem.supplier_id == filters.supplier_id)
        if filters.content_type:
            query = query.filter(ValidationItem.content_type == filters.content_type)
        if filters.priority:
            query = query.filter(ValidationItem.priority == Priority(filters.priority).value)
        if filters.min_confidence is not None:
            query = query.filter(ValidationItem.confidence_score >= filters.min_confidence)
        if filters.max_confidence is not None:
            query = query.filter(ValidationItem.confidence_score <= filters.max_confidence)

        total = query.count()
        items = (
            query.order_by(
                ValidationItem.priority_rank.desc(),
                ValidationItem.confidence_score.asc(),
                ValidationItem.submitted_at.asc(),
            )
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
            .all()
        )
        return items, total

    def get_item(self, db: Session, item_id: UUID) -> ValidationItem:
        item = db.query(ValidationItem).filter(ValidationItem.id == item_id).first()
        if not item:
            raise NotFound(f"Validation item {item_id} not found")
        return item

    def _ensure_pending(self, item: ValidationItem) -> None:
        if item.status != ValidationStatus.PENDING.value:
            raise InvalidStateTransition(f"Validation item {item.id} is already {item.status}")

    def _claim_decision(self, db: Session, item: ValidationItem, status: ValidationStatus, values: dict) -> None:
        updated = db.query(ValidationItem).filter(
            ValidationItem.id == item.id,
            ValidationItem.status == ValidationStatus.PENDING.value,
        ).update({ValidationItem.status: status.value, **values}, synchronize_session=False)
        if updated != 1:
            db.rollback()
            raise ConcurrentModification(f"Validation item {item.id} was decided concurrently")

    async def _settle_submission(
        self, db: Session, submission_id: UUID, reviewer: Optional[str], notes: Optional[str]
    ) -> Optional[ValidationStatus]:
        """
        Decide the parent submission once none of its items is pending.

        The parent update is conditional, so when two reviewers close the last
        items at once only one of them settles it and releases the products
        that waited on the review.
        """
        statuses = [
            status for (status,) in db.query(ValidationItem.status).filter(ValidationItem.submission_id == submission_id)
        ]
        if not statuses or ValidationStatus.PENDING.value in statuses:
            return None
        outcome = ValidationStatus.APPROVED if ValidationStatus.APPROVED.value in statuses else ValidationStatus.REJECTED

        settled = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.validation_status == ValidationStatus.PENDING.value,
        ).update(
            {
                Submission.validation_status: outcome.value,
                Submission.validated_by: reviewer,
                Submission.validated_at: utcnow(),
                Submission.validation_notes: notes,
            },
            synchronize_session=False,
        )
        if settled != 1:
            db.rollback()
            return None

        waiting = []
        if outcome == ValidationStatus.APPROVED:
            reviewed_ids = {
                product_id for (product_id,) in db.query(ValidationItem.extracted_product_id).filter(
                    ValidationItem.submission_id == submission_id
                )
            }
            waiting = db.query(ExtractedProduct).filter(
                ExtractedProduct.submission_id == submission_id,
                ExtractedProduct.catalog_product_id.is_(None),
            ).all()
            waiting = [p for p in waiting if p.id not in reviewed_ids and not p.auto_approved]
            for product in waiting:
                product.auto_approved = True
        db.commit()
        logger.info(f"Submission {submission_id} {outcome.value} after review of {len(statuses)} item(s)")

        for product in waiting:
            await self.inventory.push_product(db, product)
        return outcome

    # Decisions

    async def approve(
        self,
        db: Session,
        item_id: UUID,
        reviewer: Optional[str] = None,
        notes: Optional[str] = None,
        edits: Optional[ProductEdits] = None,
    ) -> ValidationItem:
        """
        Approve one item: apply edits, push the product to the catalog exactly
        once, then settle the submission if this was its last pending item.
        """
        item = self.get_item(db, item_id)
        self._ensure_pending(item)
        edit_values = edits.model_dump(exclude_none=True) if edits else {}
        submission_id = item.submission_id

        self._claim_decision(db, item, ValidationStatus.APPROVED, {
            ValidationItem.resolved_at: utcnow(),
            ValidationItem.resolved_by: reviewer,
            ValidationItem.resolution_notes: notes,
            ValidationItem.edits: edit_values or None,
        })

        product = db.query(ExtractedProduct).filter(ExtractedProduct.id == item.extracted_product_id).first()
        for field, value in edit_values.items():
            setattr(product, field, value)
        db.commit()
        logger.info(f"Validation item {item_id} approved by {reviewer or 'unknown reviewer'}")

        await self.inventory.push_product(db, product)
        await self._settle_submission(db, submission_id, reviewer, notes)

        return self.get_item(db, item_id)

    def _validate_feedback(self, feedback: Union[ValidationFeedback, dict]) -> ValidationFeedback:
        if isinstance(feedback, dict):
            try:
                feedback = ValidationFeedback(**feedback)
            except ValidationError as e:
                raise BusinessRuleViolation(f"Invalid rejection feedback: {e.errors()[0]['msg']}")
        categories = [FeedbackCategory(c).value for c in feedback.categories]
        if not categories:
            raise BusinessRuleViolation("Rejection feedback needs at least one reason category")
        if not feedback.description or not feedback.description.strip():
            raise BusinessRuleViolation("Rejection feedback needs a description")
        if feedback.subcategory:
            allowed = set().union(*(SUBCATEGORIES[c] for c in categories))
            if feedback.subcategory not in allowed:
                raise BusinessRuleViolation(f"Unknown subcategory '{feedback.subcategory}' for {', '.join(categories)}")
        return feedback

    async def reject(
        self,
        db: Session,
        item_id: UUID,
        feedback: Union[ValidationFeedback, dict],
        reviewer: Optional[str] = None,
    ) -> ValidationItem:
        """Reject one item with structured feedback; its product never reaches the catalog"""
        feedback = self._validate_feedback(feedback)
        item = self.get_item(db, item_id)
        self._ensure_pending(item)
        submission_id = item.submission_id

        self._claim_decision(db, item, ValidationStatus.REJECTED, {
            ValidationItem.resolved_at: utcnow(),
            ValidationItem.resolved_by: reviewer,
            ValidationItem.resolution_notes: feedback.description,
            ValidationItem.feedback: feedback.model_dump(mode="json"),
        })
        db.commit()
        logger.info(f"Validation item {item_id} rejected ({', '.join(feedback.categories)})")

        await self._settle_submission(db, submission_id, reviewer, feedback.description)

        return self.get_item(db, item_id)

    async def _bulk(self, db: Session, ids: List[str], action) -> BulkResult:
        result = BulkResult()
        for raw_id in ids:
            try:
                item_id = UUID(str(raw_id))
            except ValueError:
                result.failed.append(BulkFailure(id=str(raw_id), error="Invalid validation item id", code="NOT_FOUND"))
                continue
            try:
                await action(item_id)
                result.successful.append(str(item_id))
            except PipelineError as e:
                db.rollback()
                result.failed.append(BulkFailure(id=str(item_id), error=e.message, code=e.code))
        result.total_processed = len(ids)
        logger.info(f"Bulk action: {len(result.successful)} succeeded, {len(result.failed)} failed")
        return result

    async def bulk_approve(self, db: Session, ids: List[str], reviewer: Optional[str] = None, notes: Optional[str] = None) -> BulkResult:
        """Approve each id independently; one failure never blocks the others"""
        return await self._bulk(db, ids, lambda item_id: self.approve(db, item_id, reviewer=reviewer, notes=notes))

    async def bulk_reject(
        self,
        db: Session,
        ids: List[str],
        feedback: Union[ValidationFeedback, dict],
        reviewer: Optional[str] = None,
    ) -> BulkResult:
        return await self._bulk(db, ids, lambda item_id: self.reject(db, item_id, feedback, reviewer=reviewer))

    # Read side

    def feedback_categories(self) -> List[FeedbackCategoryInfo]:
        return FEEDBACK_CATEGORIES

    def get_stats(self, db: Session, now: Optional[datetime] = None) -> ValidationStats:
        now = now or utcnow()
        start_of_day = datetime.combine(now.date(), dt_time.min)

        pending_query = self._pending_query(db)
        pending = pending_query.count()
        high_priority = pending_query.filter(ValidationItem.priority == Priority.HIGH.value).count()

        decided = db.query(ValidationItem).filter(ValidationItem.status != ValidationStatus.PENDING.value).all()
        approved = sum(1 for item in decided if item.status == ValidationStatus.APPROVED.value)
        rejected = len(decided) - approved
        today = [item for item in decided if item.resolved_at and item.resolved_at >= start_of_day]

        reasons = Counter()
        for item in decided:
            if item.status == ValidationStatus.REJECTED.value and item.feedback:
                reasons.update(item.feedback.get("categories") or [])

        return ValidationStats(
            pending=pending,
            high_priority=high_priority,
            approved_today=sum(1 for item in today if item.status == ValidationStatus.APPROVED.value),
            rejected_today=sum(1 for item in today if item.status == ValidationStatus.REJECTED.value),
            approval_rate=round(approved / (approved + rejected) * 100, 1) if decided else 0.0,
            top_rejection_categories=[
                {"category": category, "count": count} for category, count in reasons.most_common(5)
            ],
        )

"""
Supplier Performance Service - derived, read-only supplier metrics.

Never stored: recomputed from Submission and ExtractedProduct history on
every read.

Tier cutoffs (configurable):
- excellent: approval rate >= supplier_tier_excellent_rate (0.9)
- good: approval rate >= supplier_tier_good_rate (0.7)
- needs-improvement: everything else, including suppliers with no decision yet
"""
import logging
from typing import List, Optional
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from supplier_intake.enums import SupplierTier, ValidationStatus
from supplier_intake.errors import NotFound
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.submission import Submission
from supplier_intake.schemas.dashboard import SupplierPerformance

logger = logging.getLogger(__name__)


class SupplierPerformanceService:
    def __init__(self, excellent_rate: float = 0.9, good_rate: float = 0.7):
        if not 0 <= good_rate <= excellent_rate <= 1:
            raise ValueError("Supplier tier cutoffs must satisfy 0 <= good <= excellent <= 1")
        self.excellent_rate = excellent_rate
        self.good_rate = good_rate

    def tier_for(self, approval_rate: float) -> SupplierTier:
        if approval_rate >= self.excellent_rate:
            return SupplierTier.EXCELLENT
        if approval_rate >= self.good_rate:
            return SupplierTier.GOOD
        return SupplierTier.NEEDS_IMPROVEMENT

    def _compute(self, db: Session, supplier_id: Optional[str] = None) -> List[SupplierPerformance]:
        approved = func.sum(case((Submission.validation_status == ValidationStatus.APPROVED.value, 1), else_=0))
        rejected = func.sum(case((Submission.validation_status == ValidationStatus.REJECTED.value, 1), else_=0))
        auto_approved = func.sum(case((Submission.auto_approved.is_(True), 1), else_=0))

        query = db.query(
            Submission.supplier_id,
            func.max(Submission.supplier_name),
            func.count(Submission.id),
            approved,
            rejected,
            auto_approved,
            func.max(Submission.created_at),
        )
        confidence_query = db.query(
            Submission.supplier_id,
            func.avg(ExtractedProduct.confidence_score),
        ).join(ExtractedProduct, ExtractedProduct.submission_id == Submission.id)

        if supplier_id:
            query = query.filter(Submission.supplier_id == supplier_id)
            confidence_query = confidence_query.filter(Submission.supplier_id == supplier_id)

        confidences = {row[0]: row[1] for row in confidence_query.group_by(Submission.supplier_id).all()}

        results = []
        for sid, name, total, n_approved, n_rejected, n_auto, last_at in query.group_by(Submission.supplier_id).all():
            n_approved = int(n_approved or 0)
            n_rejected = int(n_rejected or 0)
            decided = n_approved + n_rejected
            approval_rate = n_approved / decided if decided else 0.0
            results.append(SupplierPerformance(
                supplier_id=sid,
                supplier_name=name,
                total_submissions=int(total or 0),
                approved=n_approved,
                rejected=n_rejected,
                auto_approved=int(n_auto or 0),
                approval_rate=round(approval_rate, 4),
                average_confidence=round(float(confidences.get(sid) or 0.0), 2),
                last_submission_at=last_at,
                status=self.tier_for(approval_rate).value,
            ))
        return results

    def find_performance(self, db: Session, supplier_id: str) -> Optional[SupplierPerformance]:
        results = self._compute(db, supplier_id)
        return results[0] if results else None

    def get_performance(self, db: Session, supplier_id: str) -> SupplierPerformance:
        performance = self.find_performance(db, supplier_id)
        if performance is None:
            raise NotFound(f"No submissions from supplier {supplier_id}")
        return performance

    def list_performance(self, db: Session) -> List[SupplierPerformance]:
        return self._compute(db)

    def top_suppliers(self, db: Session, limit: int = 10) -> List[SupplierPerformance]:
        """Best approval rate first; volume breaks ties"""
        results = self._compute(db)
        results.sort(key=lambda p: (p.approval_rate, p.total_submissions, p.average_confidence), reverse=True)
        return results[:limit]

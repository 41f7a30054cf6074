from sqlalchemy import Column, String, Text, Integer, Float, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship
from supplier_intake.database import Base
from supplier_intake.enums import ValidationStatus
from supplier_intake.utils.clock import utcnow
from supplier_intake.utils.review_hints import estimate_review_minutes, suggest_actions
import uuid


class ValidationItem(Base):
    """Review-queue entry wrapping one sub-threshold extracted product"""
    __tablename__ = "validation_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    submission_id = Column(Uuid(as_uuid=True), ForeignKey("submissions.id"), nullable=False, index=True)
    extracted_product_id = Column(Uuid(as_uuid=True), ForeignKey("extracted_products.id"), nullable=False, unique=True)

    # Denormalised for queue filters
    supplier_id = Column(String(64), nullable=False, index=True)
    supplier_name = Column(String(255), nullable=True)
    content_type = Column(String(10), nullable=False)

    confidence_score = Column(Float, nullable=False)
    auto_approve_threshold = Column(Float, nullable=False)  # Threshold the product missed; stricter for weak suppliers
    priority = Column(String(10), nullable=False, index=True)  # 'low', 'medium', 'high'
    priority_rank = Column(Integer, nullable=False)  # 3 = high, for ordering
    status = Column(String(20), nullable=False, default=ValidationStatus.PENDING.value, index=True)

    submitted_at = Column(DateTime, nullable=False)  # Parent submission creation time
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True, index=True)
    resolved_by = Column(String(100), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    feedback = Column(JSON, nullable=True)  # Structured reject feedback
    edits = Column(JSON, nullable=True)  # Field edits applied on approval

    # Relationships
    submission = relationship("Submission", back_populates="validation_items")
    extracted_product = relationship("ExtractedProduct")

    @property
    def original_content(self) -> dict:
        """What the supplier actually sent"""
        submission = self.submission
        return {
            "type": submission.content_type,
            "content": submission.original_content,
            "media_ref": submission.media_ref,
        }

    @property
    def related_validations(self) -> list:
        """Other review items extracted from the same message"""
        return [item.id for item in self.submission.validation_items if item.id != self.id]

    @property
    def suggested_actions(self) -> list:
        return suggest_actions(self.extracted_product)

    @property
    def estimated_review_minutes(self) -> int:
        return estimate_review_minutes(self.extracted_product)

from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship
from supplier_intake.database import Base
from supplier_intake.enums import OperationStatus
from supplier_intake.utils.clock import utcnow
import uuid


class FailedOperation(Base):
    """
    Retryable unit of work tied to one submission and one pipeline stage.
    Succeeded and permanently failed rows are kept for operator visibility.
    """
    __tablename__ = "failed_operations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    operation_type = Column(String(30), nullable=False, index=True)  # 'webhook', 'ai_extraction', 'validation', 'inventory_update'
    submission_id = Column(Uuid(as_uuid=True), ForeignKey("submissions.id"), nullable=True, index=True)
    extracted_product_id = Column(Uuid(as_uuid=True), nullable=True)  # inventory_update only

    status = Column(String(30), nullable=False, default=OperationStatus.SCHEDULED.value, index=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    last_attempt_at = Column(DateTime, nullable=True)
    stage_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    # Relationships
    submission = relationship("Submission", back_populates="failed_operations")

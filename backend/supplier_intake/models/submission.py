from sqlalchemy import Column, String, Text, Integer, Float, Boolean, DateTime, Uuid
from sqlalchemy.orm import relationship
from supplier_intake.database import Base
from supplier_intake.enums import ProcessingStatus, ValidationStatus
from supplier_intake.utils.clock import utcnow
import uuid

# media_ref of a submission whose media has not been downloaded yet
PENDING_MEDIA_PREFIX = "whatsapp-media:"


class Submission(Base):
    """
    One inbound supplier message.
    Never physically deleted; failed terminal states persist for audit and recovery.
    """
    __tablename__ = "submissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    source_message_id = Column(String(128), nullable=False, unique=True, index=True)  # WhatsApp message id

    # Supplier snapshot taken from the supplier directory at receipt
    supplier_id = Column(String(64), nullable=False, index=True)
    supplier_name = Column(String(255), nullable=True)
    supplier_phone = Column(String(32), nullable=True)

    content_type = Column(String(10), nullable=False, index=True)  # 'text', 'image', 'pdf', 'voice'
    original_content = Column(Text, nullable=False, default="")  # Text body or voice transcription
    media_ref = Column(String, nullable=True)  # Storage path, or 'whatsapp-media:<id>' until downloaded
    media_mime_type = Column(String(100), nullable=True)
    media_filename = Column(String(255), nullable=True)

    processing_status = Column(String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True)
    validation_status = Column(String(20), nullable=False, default=ValidationStatus.PENDING.value, index=True)

    # Extraction attempt counter; a result is only committed for the current attempt
    attempt = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    overall_confidence = Column(Float, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    # Validation outcome
    auto_approved = Column(Boolean, nullable=False, default=False)
    validated_by = Column(String(100), nullable=True)
    validation_notes = Column(Text, nullable=True)
    validated_at = Column(DateTime, nullable=True)

    received_at = Column(DateTime, nullable=True)  # Message timestamp reported by WhatsApp
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    products = relationship(
        "ExtractedProduct",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="ExtractedProduct.position",
    )
    validation_items = relationship("ValidationItem", back_populates="submission", cascade="all, delete-orphan")
    failed_operations = relationship("FailedOperation", back_populates="submission")

    @property
    def media_pending(self) -> bool:
        return bool(self.media_ref) and self.media_ref.startswith(PENDING_MEDIA_PREFIX)

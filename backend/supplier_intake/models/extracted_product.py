from sqlalchemy import Column, String, Integer, Float, Numeric, Boolean, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship
from supplier_intake.database import Base
from supplier_intake.utils.clock import utcnow
import uuid


class ExtractedProduct(Base):
    """AI-derived candidate product; one submission may yield several"""
    __tablename__ = "extracted_products"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    submission_id = Column(Uuid(as_uuid=True), ForeignKey("submissions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)  # Order within the message
    attempt = Column(Integer, nullable=False, default=1)  # Extraction attempt that produced it

    name = Column(String(255), nullable=False)
    brand = Column(String(100), nullable=True)
    category = Column(String(100), nullable=True)
    condition = Column(String(50), nullable=True)  # 'new', 'used', 'refurbished', ...
    grade = Column(String(5), nullable=True)  # 'A'-'D' for refurbished items
    price = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    quantity = Column(Integer, nullable=True)
    specifications = Column(JSON, nullable=True)  # {"storage": "128GB", "ram": "8GB"}

    # Confidence 0-100, overall and per structured field
    confidence_score = Column(Float, nullable=False, default=0.0)
    field_confidences = Column(JSON, nullable=True)

    # {"ai_model": ..., "processing_time_ms": ..., "extracted_fields": [...], "source_type": ..., "fallback_used": ...}
    extraction_metadata = Column(JSON, nullable=True)

    auto_approved = Column(Boolean, nullable=False, default=False)  # Cleared the threshold, skipped review
    catalog_product_id = Column(String(64), nullable=True)  # Set once pushed to the catalog
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    submission = relationship("Submission", back_populates="products")

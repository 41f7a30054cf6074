from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal
from uuid import UUID


class ExtractedProductResponse(BaseModel):
    id: UUID
    position: int
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    grade: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    quantity: Optional[int] = None
    specifications: Optional[Dict[str, str]] = None
    confidence_score: float
    field_confidences: Optional[Dict[str, float]] = None
    extraction_metadata: Optional[dict] = None
    auto_approved: bool = False
    catalog_product_id: Optional[str] = None
    created_at: datetime

    @field_validator("price", mode="before")
    @classmethod
    def decimal_to_float(cls, v):
        if isinstance(v, Decimal):
            return float(v)
        return v

    class Config:
        from_attributes = True


class SubmissionListResponse(BaseModel):
    id: UUID
    source_message_id: str
    supplier_id: str
    supplier_name: Optional[str] = None
    content_type: str
    processing_status: str
    validation_status: str
    overall_confidence: Optional[float] = None
    product_count: int = 0
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubmissionDetailResponse(BaseModel):
    id: UUID
    source_message_id: str
    supplier_id: str
    supplier_name: Optional[str] = None
    supplier_phone: Optional[str] = None
    content_type: str
    original_content: str
    media_ref: Optional[str] = None
    media_mime_type: Optional[str] = None
    processing_status: str
    validation_status: str
    attempt: int
    error_message: Optional[str] = None
    overall_confidence: Optional[float] = None
    processing_time_ms: Optional[int] = None
    auto_approved: bool = False
    validated_by: Optional[str] = None
    validation_notes: Optional[str] = None
    validated_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    products: List[ExtractedProductResponse] = []

    class Config:
        from_attributes = True


class SubmissionPage(BaseModel):
    items: List[SubmissionListResponse]
    total: int
    page: int
    limit: int


class ProcessResponse(BaseModel):
    submission: SubmissionDetailResponse
    products_extracted: int

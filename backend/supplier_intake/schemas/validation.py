from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from uuid import UUID
from supplier_intake.enums import FeedbackCategory, Priority
from supplier_intake.schemas.submission import ExtractedProductResponse


class ValidationFeedback(BaseModel):
    """Structured reason for a rejection"""
    categories: List[FeedbackCategory] = []
    subcategory: Optional[str] = None
    description: str = ""
    severity: Literal["low", "medium", "high"] = "medium"
    suggested_improvement: Optional[str] = None

    class Config:
        use_enum_values = True


class ProductEdits(BaseModel):
    """Corrections an operator applies while approving"""
    name: Optional[str] = Field(None, min_length=1)
    brand: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    grade: Optional[Literal["A", "B", "C", "D"]] = None
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    quantity: Optional[int] = Field(None, ge=1)
    specifications: Optional[Dict[str, str]] = None


class ApproveRequest(BaseModel):
    reviewer: Optional[str] = None
    notes: Optional[str] = None
    edits: Optional[ProductEdits] = None


class RejectRequest(BaseModel):
    reviewer: Optional[str] = None
    feedback: ValidationFeedback


class BulkApproveRequest(BaseModel):
    ids: List[str]
    reviewer: Optional[str] = None
    notes: Optional[str] = None


class BulkRejectRequest(BaseModel):
    ids: List[str]
    reviewer: Optional[str] = None
    feedback: ValidationFeedback


class BulkFailure(BaseModel):
    id: str
    error: str
    code: Optional[str] = None


class BulkResult(BaseModel):
    successful: List[str] = []
    failed: List[BulkFailure] = []
    total_processed: int = 0


class ValidationFilters(BaseModel):
    supplier_id: Optional[str] = None
    content_type: Optional[str] = None
    priority: Optional[Priority] = None
    min_confidence: Optional[float] = Field(None, ge=0, le=100)
    max_confidence: Optional[float] = Field(None, ge=0, le=100)
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class OriginalContent(BaseModel):
    """The supplier message a product was extracted from"""
    type: str
    content: str = ""
    media_ref: Optional[str] = None


class SuggestedAction(BaseModel):
    type: Literal["create", "update", "merge"]
    confidence: float
    reasoning: str
    suggested_edits: Optional[Dict[str, Any]] = None


class ValidationItemResponse(BaseModel):
    id: UUID
    submission_id: UUID
    supplier_id: str
    supplier_name: Optional[str] = None
    content_type: str
    confidence_score: float
    auto_approve_threshold: float
    priority: str
    status: str
    submitted_at: datetime
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    feedback: Optional[dict] = None
    edits: Optional[dict] = None
    extracted_product: ExtractedProductResponse
    original_content: OriginalContent
    suggested_actions: List[SuggestedAction] = []
    related_validations: List[UUID] = []
    estimated_review_minutes: int

    class Config:
        from_attributes = True


class ValidationQueuePage(BaseModel):
    items: List[ValidationItemResponse]
    total: int
    page: int
    limit: int


class FeedbackCategoryInfo(BaseModel):
    id: str
    name: str
    description: str
    subcategories: List[str]


class ValidationStats(BaseModel):
    pending: int
    high_priority: int
    approved_today: int
    rejected_today: int
    approval_rate: float
    top_rejection_categories: List[Dict[str, Any]] = []

from pydantic import BaseModel, Field
from typing import Optional, List, Dict

# Every candidate carries a confidence for each of these
STRUCTURED_FIELDS = ("name", "brand", "category", "condition", "grade", "price", "currency", "quantity")


class ExtractionMetadata(BaseModel):
    ai_model: str
    processing_time_ms: int = 0
    extracted_fields: List[str] = []
    source_type: str
    fallback_used: bool = False


class ProductCandidate(BaseModel):
    """Product as returned by an extractor, before it is persisted"""
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    grade: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    quantity: Optional[int] = None
    specifications: Dict[str, str] = {}
    confidence_score: float = Field(ge=0, le=100)
    field_confidences: Dict[str, float] = {}
    extraction_metadata: ExtractionMetadata

    @property
    def total_value(self) -> Optional[float]:
        if self.price is None:
            return None
        return self.price * (self.quantity or 1)


class MediaPayload(BaseModel):
    """Downloaded media handed to the extractor"""
    content: bytes
    mime_type: Optional[str] = None
    filename: Optional[str] = None


class ExtractionResult(BaseModel):
    products: List[ProductCandidate] = []
    transcript: Optional[str] = None  # Voice notes only
    ai_model: str

from supplier_intake.schemas.extraction import ProductCandidate, ExtractionMetadata
from supplier_intake.schemas.webhook import InboundMessage, IngestResult, WebhookResponse
from supplier_intake.schemas.submission import (
    ExtractedProductResponse,
    SubmissionListResponse,
    SubmissionDetailResponse,
    SubmissionPage,
)
from supplier_intake.schemas.validation import (
    ValidationFeedback,
    ProductEdits,
    ValidationFilters,
    ValidationItemResponse,
    BulkResult,
)
from supplier_intake.schemas.recovery import FailedOperationResponse, RecoveryStats, RetryNowResponse

__all__ = [
    "ProductCandidate",
    "ExtractionMetadata",
    "InboundMessage",
    "IngestResult",
    "WebhookResponse",
    "ExtractedProductResponse",
    "SubmissionListResponse",
    "SubmissionDetailResponse",
    "SubmissionPage",
    "ValidationFeedback",
    "ProductEdits",
    "ValidationFilters",
    "ValidationItemResponse",
    "BulkResult",
    "FailedOperationResponse",
    "RecoveryStats",
    "RetryNowResponse",
]

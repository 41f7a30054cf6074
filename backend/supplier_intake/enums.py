from enum import Enum


class ContentType(str, Enum):
    """Kinds of supplier message the pipeline can extract from"""
    TEXT = "text"
    IMAGE = "image"
    PDF = "pdf"
    VOICE = "voice"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OperationType(str, Enum):
    """Pipeline stage a FailedOperation re-invokes"""
    WEBHOOK = "webhook"
    AI_EXTRACTION = "ai_extraction"
    VALIDATION = "validation"
    INVENTORY_UPDATE = "inventory_update"


class OperationStatus(str, Enum):
    SCHEDULED = "scheduled"
    RETRYING = "retrying"
    PERMANENTLY_FAILED = "permanently_failed"
    SUCCEEDED = "succeeded"


class SupplierTier(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_IMPROVEMENT = "needs-improvement"


class FeedbackCategory(str, Enum):
    """Reject reason categories"""
    EXTRACTION_ERROR = "extraction_error"
    POOR_QUALITY = "poor_quality"
    DUPLICATE_PRODUCT = "duplicate_product"
    INVALID_CONTENT = "invalid_content"
    POLICY_VIOLATION = "policy_violation"


# Allowed forward transitions; FAILED -> PENDING only through explicit reprocess.
PROCESSING_TRANSITIONS = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING},
    ProcessingStatus.PROCESSING: {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.COMPLETED: set(),
    ProcessingStatus.FAILED: {ProcessingStatus.PENDING},
}

PRIORITY_RANK = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

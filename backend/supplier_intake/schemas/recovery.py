from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID


class FailedOperationResponse(BaseModel):
    id: UUID
    operation_type: str
    submission_id: Optional[UUID] = None
    extracted_product_id: Optional[UUID] = None
    status: str
    error_message: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    stage_metadata: Optional[dict] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecoveryQueuePage(BaseModel):
    items: List[FailedOperationResponse]
    total: int
    page: int
    limit: int


class RecoveryStats(BaseModel):
    total_failed: int
    by_operation_type: Dict[str, int]
    retrying_now: int
    ready_for_retry: int
    permanently_failed: int
    resolved: int
    average_retry_time_seconds: Optional[float] = None


class RetryAttempt(BaseModel):
    operation_id: UUID
    operation_type: str
    succeeded: bool
    error: Optional[str] = None
    retry_count: int
    status: str


class RetryNowResponse(BaseModel):
    submission_id: UUID
    succeeded: bool
    attempts: int
    total_time_ms: int
    results: List[RetryAttempt]

from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID


class ProcessingFunnel(BaseModel):
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0


class ValidationFunnel(BaseModel):
    pending: int = 0
    approved: int = 0
    rejected: int = 0


class PipelineStats(BaseModel):
    total: int
    processing: ProcessingFunnel
    validation: ValidationFunnel
    approval_rate: float


class HealthMetrics(BaseModel):
    uptime_seconds: int
    total_submissions: int
    success_rate: float
    average_processing_time_ms: float


class HealthStatus(BaseModel):
    status: str  # 'healthy', 'degraded', 'unhealthy'
    timestamp: datetime
    services: Dict[str, str]
    metrics: HealthMetrics


class ActivityEntry(BaseModel):
    type: str
    submission_id: Optional[UUID] = None
    supplier_name: Optional[str] = None
    description: str
    timestamp: datetime


class SupplierPerformance(BaseModel):
    supplier_id: str
    supplier_name: Optional[str] = None
    total_submissions: int
    approved: int
    rejected: int
    auto_approved: int
    approval_rate: float
    average_confidence: float
    last_submission_at: Optional[datetime] = None
    status: str  # 'excellent', 'good', 'needs-improvement'


class ConfidenceBucket(BaseModel):
    range: str
    count: int


class AIMetrics(BaseModel):
    total_processed: int
    avg_confidence: float
    avg_processing_time_ms: float
    high_confidence_rate: float
    medium_confidence_rate: float
    low_confidence_rate: float
    fallback_rate: float
    confidence_distribution: List[ConfidenceBucket]


class TrendSummary(BaseModel):
    total_submissions: int
    total_approved: int
    total_rejected: int
    total_auto_approved: int
    approval_rate: float
    auto_approval_rate: float


class TrendPoint(BaseModel):
    date: str
    total: int
    pending: int
    approved: int
    rejected: int
    auto_approved: int


class ValidationTrends(BaseModel):
    period: str
    summary: TrendSummary
    trends: List[TrendPoint]


class Alert(BaseModel):
    type: str
    severity: str  # 'critical', 'high', 'medium'
    title: str
    message: str
    action: Optional[str] = None
    action_url: Optional[str] = None


class SystemAlerts(BaseModel):
    alerts: List[Alert]
    total_alerts: int
    critical_count: int
    high_count: int
    medium_count: int

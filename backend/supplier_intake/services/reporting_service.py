"""
Reporting Service - read-only dashboard aggregates.

Everything here is computed from Submission, ExtractedProduct, ValidationItem
and FailedOperation rows; nothing is mutated. Intermediate states (a
submission mid-retry, a product with no metadata) count as zero/default
rather than failing the aggregate.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta, time as dt_time
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from supplier_intake.enums import OperationStatus, OperationType, ProcessingStatus, ValidationStatus
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.models.submission import Submission
from supplier_intake.models.validation_item import ValidationItem
from supplier_intake.schemas.dashboard import (
    ActivityEntry,
    AIMetrics,
    Alert,
    ConfidenceBucket,
    HealthMetrics,
    HealthStatus,
    PipelineStats,
    ProcessingFunnel,
    SystemAlerts,
    TrendPoint,
    TrendSummary,
    ValidationFunnel,
    ValidationTrends,
)
from supplier_intake.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Dashboard subsystem name per recovery stage
SERVICE_STAGES = {
    "webhook": OperationType.WEBHOOK,
    "ai_processing": OperationType.AI_EXTRACTION,
    "validation": OperationType.VALIDATION,
    "inventory": OperationType.INVENTORY_UPDATE,
}


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


class ReportingService:
    def __init__(
        self,
        confidence_high_bucket: float = 90,
        confidence_medium_bucket: float = 70,
        alert_permanently_failed_threshold: int = 0,
        alert_stale_validation_hours: int = 24,
        alert_failure_rate_percent: float = 25,
        alert_pending_backlog: int = 100,
        started_at: Optional[datetime] = None,
    ):
        self.high_bucket = confidence_high_bucket
        self.medium_bucket = confidence_medium_bucket
        self.permanently_failed_threshold = alert_permanently_failed_threshold
        self.stale_hours = alert_stale_validation_hours
        self.failure_rate_percent = alert_failure_rate_percent
        self.pending_backlog = alert_pending_backlog
        self.started_at = started_at or utcnow()

    def _status_counts(self, db: Session, column) -> Counter:
        return Counter({status: count for status, count in db.query(column, func.count()).group_by(column).all()})

    def pipeline_stats(self, db: Session) -> PipelineStats:
        processing = self._status_counts(db, Submission.processing_status)
        validation = self._status_counts(db, Submission.validation_status)
        approved = validation[ValidationStatus.APPROVED.value]
        rejected = validation[ValidationStatus.REJECTED.value]

        return PipelineStats(
            total=sum(processing.values()),
            processing=ProcessingFunnel(
                pending=processing[ProcessingStatus.PENDING.value],
                in_progress=processing[ProcessingStatus.PROCESSING.value],
                completed=processing[ProcessingStatus.COMPLETED.value],
                failed=processing[ProcessingStatus.FAILED.value],
            ),
            validation=ValidationFunnel(
                pending=validation[ValidationStatus.PENDING.value],
                approved=approved,
                rejected=rejected,
            ),
            approval_rate=_percent(approved, approved + rejected),
        )

    def health(self, db: Session, now: Optional[datetime] = None) -> HealthStatus:
        """
        Per-subsystem status from its recovery queue:
        down when an operation is permanently failed, degraded while retries
        are pending, healthy otherwise.
        """
        now = now or utcnow()
        rows = db.query(FailedOperation.operation_type, FailedOperation.status, func.count()).filter(
            FailedOperation.status != OperationStatus.SUCCEEDED.value
        ).group_by(FailedOperation.operation_type, FailedOperation.status).all()

        permanent = Counter()
        retrying = Counter()
        for op_type, status, count in rows:
            if status == OperationStatus.PERMANENTLY_FAILED.value:
                permanent[op_type] += count
            else:
                retrying[op_type] += count

        services = {}
        for name, stage in SERVICE_STAGES.items():
            if permanent[stage.value]:
                services[name] = "down"
            elif retrying[stage.value]:
                services[name] = "degraded"
            else:
                services[name] = "healthy"

        if "down" in services.values():
            overall = "unhealthy"
        elif "degraded" in services.values():
            overall = "degraded"
        else:
            overall = "healthy"

        processing = self._status_counts(db, Submission.processing_status)
        completed = processing[ProcessingStatus.COMPLETED.value]
        failed = processing[ProcessingStatus.FAILED.value]
        avg_time = db.query(func.avg(Submission.processing_time_ms)).filter(
            Submission.processing_status == ProcessingStatus.COMPLETED.value
        ).scalar()

        return HealthStatus(
            status=overall,
            timestamp=now,
            services=services,
            metrics=HealthMetrics(
                uptime_seconds=max(int((now - self.started_at).total_seconds()), 0),
                total_submissions=sum(processing.values()),
                success_rate=_percent(completed, completed + failed),
                average_processing_time_ms=round(float(avg_time or 0), 1),
            ),
        )

    def recent_activity(self, db: Session, limit: int = 20) -> List[ActivityEntry]:
        entries = []

        for submission in db.query(Submission).order_by(Submission.updated_at.desc()).limit(limit).all():
            who = submission.supplier_name or submission.supplier_id
            if submission.processing_status == ProcessingStatus.COMPLETED.value:
                entries.append(ActivityEntry(
                    type="submission_processed",
                    submission_id=submission.id,
                    supplier_name=submission.supplier_name,
                    description=f"{submission.content_type} submission from {who} processed "
                                f"({len(submission.products)} product(s))",
                    timestamp=submission.updated_at,
                ))
            elif submission.processing_status == ProcessingStatus.FAILED.value:
                entries.append(ActivityEntry(
                    type="submission_failed",
                    submission_id=submission.id,
                    supplier_name=submission.supplier_name,
                    description=f"Processing failed for submission from {who}: {submission.error_message or 'unknown error'}",
                    timestamp=submission.updated_at,
                ))
            else:
                entries.append(ActivityEntry(
                    type="submission_received",
                    submission_id=submission.id,
                    supplier_name=submission.supplier_name,
                    description=f"New {submission.content_type} submission from {who}",
                    timestamp=submission.created_at,
                ))

        decided = (
            db.query(ValidationItem)
            .filter(ValidationItem.resolved_at.isnot(None))
            .order_by(ValidationItem.resolved_at.desc())
            .limit(limit)
            .all()
        )
        for item in decided:
            product_name = item.extracted_product.name if item.extracted_product else "product"
            entries.append(ActivityEntry(
                type=f"validation_{item.status}",
                submission_id=item.submission_id,
                supplier_name=item.supplier_name,
                description=f"{product_name} {item.status} by {item.resolved_by or 'reviewer'}",
                timestamp=item.resolved_at,
            ))

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def ai_metrics(self, db: Session, days: Optional[int] = None, now: Optional[datetime] = None) -> AIMetrics:
        now = now or utcnow()
        query = db.query(ExtractedProduct)
        if days:
            query = query.filter(ExtractedProduct.created_at >= now - timedelta(days=days))
        products = query.all()

        confidences = [p.confidence_score or 0.0 for p in products]
        total = len(confidences)
        high = sum(1 for c in confidences if c >= self.high_bucket)
        medium = sum(1 for c in confidences if self.medium_bucket <= c < self.high_bucket)
        low = total - high - medium
        fallback = sum(1 for p in products if (p.extraction_metadata or {}).get("fallback_used"))

        time_query = db.query(func.avg(Submission.processing_time_ms)).filter(
            Submission.processing_status == ProcessingStatus.COMPLETED.value
        )
        if days:
            time_query = time_query.filter(Submission.created_at >= now - timedelta(days=days))
        avg_time = time_query.scalar()

        high_floor = int(self.high_bucket)
        medium_floor = int(self.medium_bucket)
        return AIMetrics(
            total_processed=total,
            avg_confidence=round(sum(confidences) / total, 2) if total else 0.0,
            avg_processing_time_ms=round(float(avg_time or 0), 1),
            high_confidence_rate=_percent(high, total),
            medium_confidence_rate=_percent(medium, total),
            low_confidence_rate=_percent(low, total),
            fallback_rate=_percent(fallback, total),
            confidence_distribution=[
                ConfidenceBucket(range=f"{high_floor}-100", count=high),
                ConfidenceBucket(range=f"{medium_floor}-{high_floor - 1}", count=medium),
                ConfidenceBucket(range=f"0-{medium_floor - 1}", count=low),
            ],
        )

    def validation_trends(self, db: Session, days: int = 7, now: Optional[datetime] = None) -> ValidationTrends:
        """Daily submission outcomes over the last `days` days, today included"""
        now = now or utcnow()
        first_day = now.date() - timedelta(days=days - 1)
        window_start = datetime.combine(first_day, dt_time.min)

        submissions = db.query(Submission).filter(Submission.created_at >= window_start).all()

        buckets = {}
        for offset in range(days):
            day = (first_day + timedelta(days=offset)).isoformat()
            buckets[day] = Counter()
        for submission in submissions:
            day = submission.created_at.date().isoformat()
            if day not in buckets:
                continue
            buckets[day]["total"] += 1
            buckets[day][submission.validation_status] += 1
            if submission.auto_approved:
                buckets[day]["auto_approved"] += 1

        trends = [
            TrendPoint(
                date=day,
                total=counts["total"],
                pending=counts[ValidationStatus.PENDING.value],
                approved=counts[ValidationStatus.APPROVED.value],
                rejected=counts[ValidationStatus.REJECTED.value],
                auto_approved=counts["auto_approved"],
            )
            for day, counts in buckets.items()
        ]

        total = sum(t.total for t in trends)
        approved = sum(t.approved for t in trends)
        rejected = sum(t.rejected for t in trends)
        auto_approved = sum(t.auto_approved for t in trends)
        return ValidationTrends(
            period=f"{days}d",
            summary=TrendSummary(
                total_submissions=total,
                total_approved=approved,
                total_rejected=rejected,
                total_auto_approved=auto_approved,
                approval_rate=_percent(approved, approved + rejected),
                auto_approval_rate=_percent(auto_approved, total),
            ),
            trends=trends,
        )

    def system_alerts(self, db: Session, now: Optional[datetime] = None) -> SystemAlerts:
        now = now or utcnow()
        stale_cutoff = now - timedelta(hours=self.stale_hours)
        alerts = []

        permanently_failed = db.query(FailedOperation).filter(
            FailedOperation.status == OperationStatus.PERMANENTLY_FAILED.value
        ).count()
        if permanently_failed > self.permanently_failed_threshold:
            alerts.append(Alert(
                type="permanent_failures",
                severity="critical",
                title="Permanently failed operations",
                message=f"{permanently_failed} operation(s) exhausted their retry budget and need manual action",
                action="Review recovery queue",
                action_url="/admin/recovery",
            ))

        stale_submissions = db.query(Submission).filter(
            Submission.processing_status.in_((ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value)),
            Submission.created_at <= stale_cutoff,
        ).count()
        if stale_submissions:
            alerts.append(Alert(
                type="stale_submissions",
                severity="critical",
                title="Submissions not processed",
                message=f"{stale_submissions} submission(s) still unprocessed after {self.stale_hours}h",
                action="Inspect submissions",
                action_url="/admin/submissions?status=pending",
            ))

        stale_validations = db.query(ValidationItem).filter(
            ValidationItem.status == ValidationStatus.PENDING.value,
            ValidationItem.created_at <= stale_cutoff,
        ).count()
        if stale_validations:
            alerts.append(Alert(
                type="stale_validations",
                severity="high",
                title="Validations waiting too long",
                message=f"{stale_validations} product(s) pending review for more than {self.stale_hours}h",
                action="Open validation queue",
                action_url="/admin/validation",
            ))

        day_ago = now - timedelta(hours=24)
        recent = Counter({
            status: count
            for status, count in db.query(Submission.processing_status, func.count())
            .filter(Submission.created_at >= day_ago)
            .group_by(Submission.processing_status)
            .all()
        })
        finished = recent[ProcessingStatus.COMPLETED.value] + recent[ProcessingStatus.FAILED.value]
        failure_rate = _percent(recent[ProcessingStatus.FAILED.value], finished)
        if finished and failure_rate > self.failure_rate_percent:
            alerts.append(Alert(
                type="high_failure_rate",
                severity="high",
                title="High extraction failure rate",
                message=f"{failure_rate}% of submissions failed extraction in the last 24h",
                action="Check AI extraction service",
                action_url="/admin/recovery?operation_type=ai_extraction",
            ))

        backlog = db.query(Submission).filter(
            Submission.processing_status == ProcessingStatus.PENDING.value
        ).count()
        if backlog > self.pending_backlog:
            alerts.append(Alert(
                type="processing_backlog",
                severity="medium",
                title="Processing backlog",
                message=f"{backlog} submissions waiting for extraction",
                action="Check the recovery scheduler",
                action_url="/admin/submissions?status=pending",
            ))

        review_backlog = db.query(ValidationItem).filter(
            ValidationItem.status == ValidationStatus.PENDING.value
        ).count()
        if review_backlog > self.pending_backlog:
            alerts.append(Alert(
                type="validation_backlog",
                severity="medium",
                title="Validation backlog",
                message=f"{review_backlog} products waiting for review",
                action="Open validation queue",
                action_url="/admin/validation",
            ))

        severities = Counter(alert.severity for alert in alerts)
        return SystemAlerts(
            alerts=alerts,
            total_alerts=len(alerts),
            critical_count=severities["critical"],
            high_count=severities["high"],
            medium_count=severities["medium"],
        )

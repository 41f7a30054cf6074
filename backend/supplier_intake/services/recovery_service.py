"""
Recovery Service - owns the retry queue of failed pipeline stages.

State machine per operation:
    scheduled -> retrying -> succeeded
                          -> scheduled (retry_count + 1)
                          -> permanently_failed (retry_count == max_retries)

A retrying operation whose claim outlives stale_claim_seconds is released back
to scheduled, counting the lost attempt.

Claims are conditional UPDATEs so a manual retry and the scheduler can never
run the same operation at once.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID
from sqlalchemy import or_
from sqlalchemy.orm import Session

from supplier_intake.enums import OperationType, OperationStatus
from supplier_intake.errors import ConcurrentModification, InvalidStateTransition, NotFound, PipelineError
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.models.submission import Submission
from supplier_intake.schemas.recovery import RecoveryStats, RetryAttempt, RetryNowResponse
from supplier_intake.utils.clock import utcnow

logger = logging.getLogger(__name__)

StageHandler = Callable[[Session, FailedOperation], Awaitable[None]]

ACTIVE_STATUSES = (
    OperationStatus.SCHEDULED.value,
    OperationStatus.RETRYING.value,
    OperationStatus.PERMANENTLY_FAILED.value,
)

# Manual retries walk the stages in pipeline order
STAGE_ORDER = {
    OperationType.WEBHOOK.value: 0,
    OperationType.AI_EXTRACTION.value: 1,
    OperationType.VALIDATION.value: 2,
    OperationType.INVENTORY_UPDATE.value: 3,
}


class RecoveryService:
    """Bounded retries with capped exponential backoff"""

    def __init__(
        self,
        max_retries: int,
        backoff_base_seconds: int,
        backoff_max_seconds: int,
        stale_claim_seconds: int = 900,
    ):
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        # A claim older than this belongs to a worker that died mid-attempt
        self.stale_claim_seconds = stale_claim_seconds
        self._handlers: Dict[str, StageHandler] = {}

    def register_handler(self, operation_type: OperationType, handler: StageHandler) -> None:
        self._handlers[operation_type.value] = handler

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the next attempt; non-decreasing in retry_count"""
        seconds = min(self.backoff_base_seconds * (2 ** retry_count), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    def enqueue(
        self,
        db: Session,
        operation_type: OperationType,
        submission_id: Optional[UUID],
        error: str,
        extracted_product_id: Optional[UUID] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> FailedOperation:
        """
        Record a failed stage for retry.

        An operation still active for the same submission, stage and product is
        updated instead of duplicated; its retry budget is left untouched.
        """
        now = now or utcnow()
        self.release_stale_claims(db, now=now, submission_id=submission_id)

        query = db.query(FailedOperation).filter(
            FailedOperation.operation_type == operation_type.value,
            FailedOperation.submission_id == submission_id,
            FailedOperation.status.in_(ACTIVE_STATUSES),
        )
        if extracted_product_id is not None:
            query = query.filter(FailedOperation.extracted_product_id == extracted_product_id)
        existing = query.first()

        if existing:
            existing.error_message = error
            if metadata:
                existing.stage_metadata = {**(existing.stage_metadata or {}), **metadata}
            db.commit()
            logger.info(f"{operation_type.value} failure for submission {submission_id} already queued as {existing.id}")
            return existing

        operation = FailedOperation(
            operation_type=operation_type.value,
            submission_id=submission_id,
            extracted_product_id=extracted_product_id,
            status=OperationStatus.SCHEDULED.value,
            error_message=error,
            retry_count=0,
            max_retries=self.max_retries,
            next_retry_at=now + self.backoff(0),
            stage_metadata=metadata or {},
            created_at=now,
        )
        db.add(operation)
        db.commit()
        db.refresh(operation)

        logger.warning(
            f"Queued {operation_type.value} retry for submission {submission_id}: {error} "
            f"(next attempt at {operation.next_retry_at.isoformat()})"
        )
        return operation

    def resolve_for_submission(self, db: Session, submission_id: UUID, operation_type: OperationType) -> int:
        """Close waiting operations whose stage has since succeeded by other means"""
        now = utcnow()
        count = db.query(FailedOperation).filter(
            FailedOperation.submission_id == submission_id,
            FailedOperation.operation_type == operation_type.value,
            FailedOperation.status.in_((OperationStatus.SCHEDULED.value, OperationStatus.PERMANENTLY_FAILED.value)),
        ).update(
            {
                FailedOperation.status: OperationStatus.SUCCEEDED.value,
                FailedOperation.resolved_at: now,
                FailedOperation.next_retry_at: None,
            },
            synchronize_session=False,
        )
        db.commit()
        if count:
            logger.info(f"Resolved {count} {operation_type.value} operation(s) for submission {submission_id}")
        return count

    def get_operation(self, db: Session, operation_id: UUID) -> FailedOperation:
        operation = db.query(FailedOperation).filter(FailedOperation.id == operation_id).first()
        if not operation:
            raise NotFound(f"Failed operation {operation_id} not found")
        return operation

    def list_queue(
        self,
        db: Session,
        operation_type: Optional[str] = None,
        status: Optional[str] = None,
        submission_id: Optional[UUID] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[FailedOperation], int]:
        """Operations awaiting recovery, soonest retry first; resolved ones only when asked for"""
        query = db.query(FailedOperation)
        if status:
            query = query.filter(FailedOperation.status == status)
        else:
            query = query.filter(FailedOperation.status.in_(ACTIVE_STATUSES))
        if operation_type:
            query = query.filter(FailedOperation.operation_type == operation_type)
        if submission_id:
            query = query.filter(FailedOperation.submission_id == submission_id)

        total = query.count()
        items = (
            query.order_by(
                FailedOperation.next_retry_at.is_(None),
                FailedOperation.next_retry_at.asc(),
                FailedOperation.created_at.asc(),
            )
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def get_stats(self, db: Session, now: Optional[datetime] = None) -> RecoveryStats:
        now = now or utcnow()
        active = db.query(FailedOperation).filter(FailedOperation.status.in_(ACTIVE_STATUSES)).all()

        by_type = {op_type.value: 0 for op_type in OperationType}
        retrying_now = 0
        ready = 0
        permanently_failed = 0
        for op in active:
            by_type[op.operation_type] = by_type.get(op.operation_type, 0) + 1
            if op.status == OperationStatus.PERMANENTLY_FAILED.value:
                permanently_failed += 1
            else:
                retrying_now += 1
                if op.status == OperationStatus.SCHEDULED.value and op.next_retry_at and op.next_retry_at <= now:
                    ready += 1

        resolved = db.query(FailedOperation).filter(
            FailedOperation.status == OperationStatus.SUCCEEDED.value
        ).all()
        durations = [
            (op.resolved_at - op.created_at).total_seconds()
            for op in resolved
            if op.resolved_at and op.created_at
        ]

        return RecoveryStats(
            total_failed=len(active),
            by_operation_type=by_type,
            retrying_now=retrying_now,
            ready_for_retry=ready,
            permanently_failed=permanently_failed,
            resolved=len(resolved),
            average_retry_time_seconds=round(sum(durations) / len(durations), 1) if durations else None,
        )

    def _claim(self, db: Session, operation_id: UUID, manual: bool, now: datetime) -> bool:
        """Atomically move an operation to retrying; False when someone else holds it"""
        query = db.query(FailedOperation).filter(FailedOperation.id == operation_id)
        if manual:
            query = query.filter(FailedOperation.status.in_(
                (OperationStatus.SCHEDULED.value, OperationStatus.PERMANENTLY_FAILED.value)
            ))
        else:
            query = query.filter(
                FailedOperation.status == OperationStatus.SCHEDULED.value,
                FailedOperation.next_retry_at <= now,
                FailedOperation.retry_count < FailedOperation.max_retries,
            )
        claimed = query.update(
            {FailedOperation.status: OperationStatus.RETRYING.value, FailedOperation.last_attempt_at: now},
            synchronize_session=False,
        )
        db.commit()
        return claimed == 1

    async def attempt(self, db: Session, operation_id: UUID, manual: bool = False, now: Optional[datetime] = None) -> RetryAttempt:
        """Claim one operation and re-invoke its stage"""
        now = now or utcnow()
        if not self._claim(db, operation_id, manual, now):
            raise ConcurrentModification(f"Operation {operation_id} is not available for retry")

        operation = self.get_operation(db, operation_id)
        handler = self._handlers.get(operation.operation_type)
        logger.info(
            f"Retrying {operation.operation_type} for submission {operation.submission_id} "
            f"(attempt {operation.retry_count + 1}/{operation.max_retries}{', manual' if manual else ''})"
        )

        try:
            if handler is None:
                raise PipelineError(f"No handler registered for {operation.operation_type}")
            await handler(db, operation)
        except Exception as e:
            db.rollback()
            operation = self.get_operation(db, operation_id)
            error = e.message if isinstance(e, PipelineError) else str(e)
            self._record_failure(db, operation, error or type(e).__name__, utcnow())
            return self._to_attempt(operation, succeeded=False, error=operation.error_message)

        operation = self.get_operation(db, operation_id)
        operation.status = OperationStatus.SUCCEEDED.value
        operation.resolved_at = utcnow()
        operation.next_retry_at = None
        db.commit()
        logger.info(f"{operation.operation_type} retry for submission {operation.submission_id} succeeded")
        return self._to_attempt(operation, succeeded=True)

    def _record_failure(self, db: Session, operation: FailedOperation, error: str, now: datetime) -> None:
        operation.error_message = error
        operation.retry_count = min(operation.retry_count + 1, operation.max_retries)
        if operation.retry_count >= operation.max_retries:
            operation.status = OperationStatus.PERMANENTLY_FAILED.value
            operation.next_retry_at = None
            logger.error(
                f"{operation.operation_type} for submission {operation.submission_id} permanently failed "
                f"after {operation.retry_count} attempts: {error}"
            )
        else:
            operation.status = OperationStatus.SCHEDULED.value
            operation.next_retry_at = now + self.backoff(operation.retry_count)
            logger.warning(
                f"{operation.operation_type} retry for submission {operation.submission_id} failed "
                f"({operation.retry_count}/{operation.max_retries}), next attempt at {operation.next_retry_at.isoformat()}"
            )
        db.commit()

    def release_stale_claims(
        self, db: Session, now: Optional[datetime] = None, submission_id: Optional[UUID] = None
    ) -> int:
        """
        Hand abandoned claims back to the schedule.

        A retrying operation whose claim is older than stale_claim_seconds lost
        its worker. The lost attempt counts against the budget and the operation
        is due again right away, or permanently failed when the budget is spent.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_claim_seconds)
        query = db.query(FailedOperation).filter(
            FailedOperation.status == OperationStatus.RETRYING.value,
            or_(FailedOperation.last_attempt_at.is_(None), FailedOperation.last_attempt_at <= cutoff),
        )
        if submission_id is not None:
            query = query.filter(FailedOperation.submission_id == submission_id)

        released = 0
        for operation in query.all():
            retry_count = min(operation.retry_count + 1, operation.max_retries)
            exhausted = retry_count >= operation.max_retries
            updated = db.query(FailedOperation).filter(
                FailedOperation.id == operation.id,
                FailedOperation.status == OperationStatus.RETRYING.value,
                FailedOperation.last_attempt_at == operation.last_attempt_at,
            ).update(
                {
                    FailedOperation.status: (
                        OperationStatus.PERMANENTLY_FAILED.value if exhausted else OperationStatus.SCHEDULED.value
                    ),
                    FailedOperation.retry_count: retry_count,
                    FailedOperation.next_retry_at: None if exhausted else now,
                    FailedOperation.error_message: f"Retry abandoned after {self.stale_claim_seconds}s without a result",
                },
                synchronize_session=False,
            )
            if updated:
                released += 1
                logger.warning(
                    f"Released stale {operation.operation_type} claim for submission {operation.submission_id} "
                    f"({retry_count}/{operation.max_retries})"
                )
        db.commit()
        return released

    def _to_attempt(self, operation: FailedOperation, succeeded: bool, error: Optional[str] = None) -> RetryAttempt:
        return RetryAttempt(
            operation_id=operation.id,
            operation_type=operation.operation_type,
            succeeded=succeeded,
            error=error,
            retry_count=operation.retry_count,
            status=operation.status,
        )

    async def retry_due(self, db: Session, now: Optional[datetime] = None, limit: int = 20) -> List[RetryAttempt]:
        """Run every operation whose backoff has elapsed and whose budget is not spent"""
        now = now or utcnow()
        due_ids = [
            row.id
            for row in db.query(FailedOperation.id)
            .filter(
                FailedOperation.status == OperationStatus.SCHEDULED.value,
                FailedOperation.next_retry_at <= now,
                FailedOperation.retry_count < FailedOperation.max_retries,
            )
            .order_by(FailedOperation.next_retry_at.asc())
            .limit(limit)
            .all()
        ]

        results = []
        for operation_id in due_ids:
            try:
                results.append(await self.attempt(db, operation_id, manual=False, now=now))
            except ConcurrentModification:
                logger.info(f"Operation {operation_id} claimed elsewhere, skipping")
        return results

    async def retry_now(self, db: Session, submission_id: UUID) -> RetryNowResponse:
        """
        Immediately retry every failed stage of a submission, ignoring the schedule.
        Allowed on permanently failed operations; each attempt still counts.
        """
        submission = db.query(Submission).filter(Submission.id == submission_id).first()
        if not submission:
            raise NotFound(f"Submission {submission_id} not found")

        self.release_stale_claims(db, submission_id=submission_id)
        operations = db.query(FailedOperation).filter(
            FailedOperation.submission_id == submission_id,
            FailedOperation.status.in_(ACTIVE_STATUSES),
        ).all()
        if not operations:
            raise InvalidStateTransition(f"Submission {submission_id} has no failed operation to retry")
        if all(op.status == OperationStatus.RETRYING.value for op in operations):
            raise ConcurrentModification(f"Submission {submission_id} is already being retried")

        operations.sort(key=lambda op: (STAGE_ORDER.get(op.operation_type, 99), op.created_at))
        pending_ids = [op.id for op in operations if op.status != OperationStatus.RETRYING.value]

        started = time.monotonic()
        results = []
        for operation_id in pending_ids:
            try:
                results.append(await self.attempt(db, operation_id, manual=True))
            except ConcurrentModification as e:
                operation = self.get_operation(db, operation_id)
                results.append(self._to_attempt(operation, succeeded=False, error=e.message))
        elapsed_ms = int((time.monotonic() - started) * 1000)

        return RetryNowResponse(
            submission_id=submission_id,
            succeeded=all(r.succeeded for r in results),
            attempts=len(results),
            total_time_ms=elapsed_ms,
            results=results,
        )

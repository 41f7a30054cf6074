"""
Extraction Worker - runs AI extraction for one submission at a time.

At most one extraction is in flight per submission: the pending -> processing
claim is a conditional UPDATE that also bumps the submission's attempt
counter, and a result is only committed while the submission is still
processing under the same attempt. A late result from a superseded attempt
is discarded.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from statistics import mean
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from supplier_intake.enums import ContentType, OperationType, ProcessingStatus, ValidationStatus
from supplier_intake.errors import (
    BusinessRuleViolation,
    ConcurrentModification,
    ExtractionError,
    ExtractionTimeout,
    InvalidStateTransition,
    NotFound,
    PipelineError,
)
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.models.submission import Submission, PENDING_MEDIA_PREFIX
from supplier_intake.models.validation_item import ValidationItem
from supplier_intake.schemas.extraction import ExtractionResult, MediaPayload
from supplier_intake.services.extraction_service import Extractor
from supplier_intake.services.recovery_service import RecoveryService
from supplier_intake.services.storage_service import StorageService
from supplier_intake.services.validation_queue_service import ValidationQueueService
from supplier_intake.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ExtractionWorker:
    def __init__(
        self,
        extractor: Extractor,
        validation: ValidationQueueService,
        recovery: RecoveryService,
        storage: StorageService,
        timeout_seconds: float = 60,
    ):
        self.extractor = extractor
        self.validation = validation
        self.recovery = recovery
        self.storage = storage
        self.timeout_seconds = timeout_seconds

    def get_submission(self, db: Session, submission_id: UUID) -> Submission:
        submission = db.query(Submission).filter(Submission.id == submission_id).first()
        if not submission:
            raise NotFound(f"Submission {submission_id} not found")
        return submission

    async def process(self, db: Session, submission_id: UUID) -> List[ExtractedProduct]:
        """
        Extract products from a pending submission and route them.

        Extraction failures never propagate: the submission is marked failed
        and an ai_extraction operation is queued for recovery.

        Returns:
            Persisted products; empty when extraction failed or was superseded
        """
        submission = self.get_submission(db, submission_id)
        if submission.processing_status != ProcessingStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Submission {submission_id} is {submission.processing_status}; only pending submissions can be processed"
            )
        if submission.media_pending:
            raise BusinessRuleViolation(f"Media for submission {submission_id} has not been downloaded yet")

        try:
            products = await self.run_extraction(db, submission_id)
        except ExtractionError as e:
            self.recovery.enqueue(db, OperationType.AI_EXTRACTION, submission_id, e.message)
            return []

        if products is None:
            return []
        await self._route(db, submission_id)
        return products

    async def reprocess(self, db: Session, submission_id: UUID) -> List[ExtractedProduct]:
        """
        Reset a failed submission to pending, drop its previous extraction and run again.
        Any result still in flight for the earlier attempt will be discarded.
        """
        submission = self.get_submission(db, submission_id)
        if submission.processing_status != ProcessingStatus.FAILED.value:
            raise InvalidStateTransition(
                f"Submission {submission_id} is {submission.processing_status}; only failed submissions can be reprocessed"
            )
        self._reset_for_retry(db, submission_id)
        logger.info(f"Submission {submission_id} reset for reprocessing")

        products = await self.process(db, submission_id)
        if products:
            self.recovery.resolve_for_submission(db, submission_id, OperationType.AI_EXTRACTION)
        return products

    async def retry_extraction(self, db: Session, operation: FailedOperation) -> None:
        """Recovery handler for ai_extraction; raises when extraction fails again"""
        submission = self.get_submission(db, operation.submission_id)
        if submission.processing_status == ProcessingStatus.COMPLETED.value:
            logger.info(f"Submission {submission.id} already extracted, nothing to retry")
            return
        if submission.processing_status == ProcessingStatus.PROCESSING.value:
            raise ConcurrentModification(f"Extraction for submission {submission.id} is already in flight")
        if submission.media_pending:
            raise BusinessRuleViolation(f"Media for submission {submission.id} has not been downloaded yet")
        if submission.processing_status == ProcessingStatus.FAILED.value:
            self._reset_for_retry(db, submission.id)

        products = await self.run_extraction(db, operation.submission_id)
        if products is None:
            raise ConcurrentModification(f"Extraction for submission {operation.submission_id} was superseded")
        await self._route(db, operation.submission_id)

    async def retry_routing(self, db: Session, operation: FailedOperation) -> None:
        """Recovery handler for validation"""
        await self.validation.route_submission(db, operation.submission_id)

    async def run_extraction(self, db: Session, submission_id: UUID) -> Optional[List[ExtractedProduct]]:
        """
        Claim, extract and commit one attempt.

        Raises ExtractionError (or ExtractionTimeout) after marking the
        submission failed. Returns None when the result arrived for an attempt
        that has since been superseded.
        """
        attempt = self._claim(db, submission_id)
        submission = self.get_submission(db, submission_id)
        content_type = ContentType(submission.content_type)
        logger.info(f"Extracting submission {submission_id} ({content_type.value}, attempt {attempt})")

        started = time.monotonic()
        try:
            media = self._load_media(submission)
            result = await asyncio.wait_for(
                self.extractor.extract(content_type, submission.original_content or "", media),
                timeout=self.timeout_seconds,
            )
            if not result.products:
                raise ExtractionError("No products found in submission")
        except asyncio.TimeoutError:
            error = ExtractionTimeout(f"Extraction did not finish within {self.timeout_seconds}s")
            self._mark_failed(db, submission_id, attempt, error, started)
            raise error
        except ExtractionError as e:
            self._mark_failed(db, submission_id, attempt, e, started)
            raise
        except Exception as e:
            message = e.message if isinstance(e, PipelineError) else str(e)
            error = ExtractionError(message or type(e).__name__)
            self._mark_failed(db, submission_id, attempt, error, started)
            raise error

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return self._commit_result(db, submission_id, attempt, result, elapsed_ms)

    def _claim(self, db: Session, submission_id: UUID) -> int:
        claimed = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.processing_status == ProcessingStatus.PENDING.value,
        ).update(
            {
                Submission.processing_status: ProcessingStatus.PROCESSING.value,
                Submission.attempt: Submission.attempt + 1,
                Submission.processing_started_at: utcnow(),
                Submission.error_message: None,
            },
            synchronize_session=False,
        )
        db.commit()
        if claimed != 1:
            raise ConcurrentModification(f"Submission {submission_id} is already being processed")
        return self.get_submission(db, submission_id).attempt

    def _load_media(self, submission: Submission) -> Optional[MediaPayload]:
        if not submission.media_ref:
            return None
        if submission.media_ref.startswith(PENDING_MEDIA_PREFIX):
            raise ExtractionError("Media has not been downloaded yet")
        return MediaPayload(
            content=self.storage.download_file(submission.media_ref),
            mime_type=submission.media_mime_type,
            filename=submission.media_filename,
        )

    def _mark_failed(self, db: Session, submission_id: UUID, attempt: int, error: PipelineError, started: float) -> None:
        db.rollback()
        updated = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.attempt == attempt,
            Submission.processing_status == ProcessingStatus.PROCESSING.value,
        ).update(
            {
                Submission.processing_status: ProcessingStatus.FAILED.value,
                Submission.error_message: error.message,
                Submission.processing_time_ms: int((time.monotonic() - started) * 1000),
            },
            synchronize_session=False,
        )
        db.commit()
        if updated:
            logger.error(f"Extraction failed for submission {submission_id} (attempt {attempt}): {error.message}")
        else:
            logger.info(f"Discarding failure of superseded attempt {attempt} for submission {submission_id}")

    def _commit_result(
        self,
        db: Session,
        submission_id: UUID,
        attempt: int,
        result: ExtractionResult,
        elapsed_ms: int,
    ) -> Optional[List[ExtractedProduct]]:
        values = {
            Submission.processing_status: ProcessingStatus.COMPLETED.value,
            Submission.overall_confidence: round(mean(p.confidence_score for p in result.products), 2),
            Submission.processing_time_ms: elapsed_ms,
            Submission.error_message: None,
        }
        if result.transcript:
            values[Submission.original_content] = result.transcript

        updated = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.attempt == attempt,
            Submission.processing_status == ProcessingStatus.PROCESSING.value,
        ).update(values, synchronize_session=False)
        if updated != 1:
            db.rollback()
            logger.warning(f"Discarding late extraction result of attempt {attempt} for submission {submission_id}")
            return None

        products = []
        for position, candidate in enumerate(result.products):
            metadata = candidate.extraction_metadata.model_dump()
            metadata["processing_time_ms"] = metadata.get("processing_time_ms") or elapsed_ms
            products.append(ExtractedProduct(
                submission_id=submission_id,
                position=position,
                attempt=attempt,
                name=candidate.name,
                brand=candidate.brand,
                category=candidate.category,
                condition=candidate.condition,
                grade=candidate.grade,
                price=candidate.price,
                currency=candidate.currency,
                quantity=candidate.quantity,
                specifications=candidate.specifications,
                confidence_score=candidate.confidence_score,
                field_confidences=candidate.field_confidences,
                extraction_metadata=metadata,
            ))
        db.add_all(products)
        db.commit()

        logger.info(
            f"Submission {submission_id} completed: {len(products)} product(s), "
            f"confidence {values[Submission.overall_confidence]}, {elapsed_ms}ms"
        )
        return products

    async def _route(self, db: Session, submission_id: UUID) -> None:
        try:
            await self.validation.route_submission(db, submission_id)
        except Exception as e:
            db.rollback()
            message = e.message if isinstance(e, PipelineError) else str(e)
            logger.error(f"Routing failed for submission {submission_id}: {message}")
            self.recovery.enqueue(db, OperationType.VALIDATION, submission_id, message)

    def _reset_for_retry(self, db: Session, submission_id: UUID) -> None:
        """failed -> pending, clearing the previous extraction and review items"""
        reset = db.query(Submission).filter(
            Submission.id == submission_id,
            Submission.processing_status == ProcessingStatus.FAILED.value,
        ).update(
            {
                Submission.processing_status: ProcessingStatus.PENDING.value,
                Submission.validation_status: ValidationStatus.PENDING.value,
                Submission.overall_confidence: None,
                Submission.processing_time_ms: None,
                Submission.processing_started_at: None,
                Submission.auto_approved: False,
                Submission.validated_by: None,
                Submission.validated_at: None,
                Submission.validation_notes: None,
            },
            synchronize_session=False,
        )
        if reset != 1:
            db.rollback()
            raise ConcurrentModification(f"Submission {submission_id} changed state during reset")

        db.query(ValidationItem).filter(ValidationItem.submission_id == submission_id).delete(synchronize_session=False)
        db.query(ExtractedProduct).filter(ExtractedProduct.submission_id == submission_id).delete(synchronize_session=False)
        db.commit()

    # Scheduler duties

    def pending_for_sweep(self, db: Session, older_than_minutes: int, now: Optional[datetime] = None, limit: int = 20) -> List[UUID]:
        """Pending submissions whose dispatch never happened, oldest first"""
        cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)
        rows = (
            db.query(Submission.id)
            .filter(
                Submission.processing_status == ProcessingStatus.PENDING.value,
                Submission.created_at <= cutoff,
                (Submission.media_ref.is_(None)) | (~Submission.media_ref.startswith(PENDING_MEDIA_PREFIX)),
            )
            .order_by(Submission.created_at.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    def fail_stuck(self, db: Session, stuck_minutes: int, now: Optional[datetime] = None) -> int:
        """Declare submissions processing for too long failed and queue them for recovery"""
        cutoff = (now or utcnow()) - timedelta(minutes=stuck_minutes)
        stuck = db.query(Submission.id, Submission.attempt).filter(
            Submission.processing_status == ProcessingStatus.PROCESSING.value,
            Submission.processing_started_at <= cutoff,
        ).all()

        count = 0
        for row in stuck:
            updated = db.query(Submission).filter(
                Submission.id == row.id,
                Submission.attempt == row.attempt,
                Submission.processing_status == ProcessingStatus.PROCESSING.value,
            ).update(
                {
                    Submission.processing_status: ProcessingStatus.FAILED.value,
                    Submission.error_message: f"Extraction did not finish within {stuck_minutes} minutes",
                },
                synchronize_session=False,
            )
            db.commit()
            if updated:
                count += 1
                logger.error(f"Submission {row.id} stuck in processing since before {cutoff.isoformat()}, marked failed")
                self.recovery.enqueue(
                    db, OperationType.AI_EXTRACTION, row.id,
                    f"Extraction did not finish within {stuck_minutes} minutes",
                )
        return count

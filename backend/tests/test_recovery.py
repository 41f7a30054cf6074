from datetime import timedelta

import pytest

from supplier_intake.enums import OperationStatus, OperationType, ProcessingStatus, ValidationStatus
from supplier_intake.errors import ConcurrentModification, InvalidStateTransition, NotFound
from supplier_intake.models import ExtractedProduct, FailedOperation, Submission
from supplier_intake.services.recovery_scheduler import RecoveryScheduler
from supplier_intake.utils.clock import utcnow


def later():
    # Past every backoff the tests produce
    return utcnow() + timedelta(hours=2)


@pytest.mark.parametrize("retry_count,seconds", [(0, 30), (1, 60), (2, 120), (6, 1920), (7, 3600), (20, 3600)])
def test_backoff_is_capped_exponential(pipeline, retry_count, seconds):
    assert pipeline.recovery.backoff(retry_count) == timedelta(seconds=seconds)


async def test_enqueue_reuses_active_operation(pipeline, db, message):
    submission = await pipeline.ingestion.receive(db, message())

    first = pipeline.recovery.enqueue(db, OperationType.AI_EXTRACTION, submission.id, "timeout")
    second = pipeline.recovery.enqueue(db, OperationType.AI_EXTRACTION, submission.id, "rate limited")

    assert first.id == second.id
    assert second.error_message == "rate limited"
    assert second.retry_count == 0
    assert db.query(FailedOperation).count() == 1


async def test_retry_budget_is_bounded(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail("model unavailable")
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()

    # Not due yet
    assert await pipeline.recovery.retry_due(db) == []

    for expected_count in (1, 2):
        [attempt] = await pipeline.recovery.retry_due(db, now=later())
        assert attempt.succeeded is False
        assert attempt.retry_count == expected_count
        assert attempt.status == OperationStatus.SCHEDULED.value

    [attempt] = await pipeline.recovery.retry_due(db, now=later())
    assert attempt.status == OperationStatus.PERMANENTLY_FAILED.value

    db.refresh(operation)
    assert operation.retry_count == 3
    assert operation.next_retry_at is None
    assert operation.error_message == "model unavailable"

    # No automatic fourth retry
    assert await pipeline.recovery.retry_due(db, now=later() + timedelta(days=1)) == []
    assert len(fake_extractor.calls) == 4

    stats = pipeline.recovery.get_stats(db)
    assert stats.total_failed == 1
    assert stats.permanently_failed == 1
    assert stats.retrying_now == 0
    assert stats.by_operation_type["ai_extraction"] == 1

    db.refresh(submission)
    assert submission.processing_status == ProcessingStatus.FAILED.value


async def test_manual_retry_recovers_permanent_failure(pipeline, db, message, fake_extractor, candidate):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    for _ in range(3):
        await pipeline.recovery.retry_due(db, now=later())

    fake_extractor.will_return(candidate(confidence=95))
    response = await pipeline.recovery.retry_now(db, submission.id)

    assert response.succeeded is True
    assert response.attempts == 1
    assert response.results[0].retry_count == 3
    assert response.results[0].status == OperationStatus.SUCCEEDED.value
    db.refresh(submission)
    assert submission.processing_status == ProcessingStatus.COMPLETED.value
    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert pipeline.recovery.get_stats(db).resolved == 1
    # Resolved operations leave the default queue view
    items, total = pipeline.recovery.list_queue(db)
    assert total == 0
    items, total = pipeline.recovery.list_queue(db, status=OperationStatus.SUCCEEDED.value)
    assert total == 1


async def test_manual_retry_that_fails_still_counts(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)

    response = await pipeline.recovery.retry_now(db, submission.id)

    assert response.succeeded is False
    assert response.results[0].retry_count == 1
    assert response.results[0].error == "model unavailable"


async def test_retry_now_without_failures(pipeline, db, message):
    submission = await pipeline.ingestion.receive(db, message())

    with pytest.raises(InvalidStateTransition):
        await pipeline.recovery.retry_now(db, submission.id)


async def test_retry_now_unknown_submission(pipeline, db):
    import uuid

    with pytest.raises(NotFound):
        await pipeline.recovery.retry_now(db, uuid.uuid4())


async def test_operation_in_flight_cannot_be_claimed_twice(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()
    operation.status = OperationStatus.RETRYING.value
    operation.last_attempt_at = utcnow()
    db.commit()

    with pytest.raises(ConcurrentModification):
        await pipeline.recovery.attempt(db, operation.id, manual=True)
    with pytest.raises(ConcurrentModification):
        await pipeline.recovery.retry_now(db, submission.id)


async def test_inventory_update_is_retried(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    fake_catalog.failures_left = 1
    fake_extractor.will_return(candidate(confidence=95))
    submission = await pipeline.ingestion.receive(db, message())
    [product] = await pipeline.worker.process(db, submission.id)

    operation = db.query(FailedOperation).one()
    assert operation.operation_type == OperationType.INVENTORY_UPDATE.value
    assert operation.extracted_product_id == product.id
    db.refresh(submission)
    assert submission.validation_status == ValidationStatus.APPROVED.value

    [attempt] = await pipeline.recovery.retry_due(db, now=later())

    assert attempt.succeeded is True
    assert len(fake_catalog.calls) == 2
    db.refresh(product)
    assert product.catalog_product_id == "catalog-2"


async def test_inventory_retry_skips_products_already_in_catalog(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    fake_catalog.failures_left = 1
    fake_extractor.will_return(candidate(confidence=95))
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    product = db.query(ExtractedProduct).one()
    product.catalog_product_id = "catalog-manual"
    db.commit()

    [attempt] = await pipeline.recovery.retry_due(db, now=later())

    assert attempt.succeeded is True
    assert len(fake_catalog.calls) == 1


async def test_scheduler_tick(pipeline, db, message, fake_extractor, candidate):
    fake_extractor.will_fail()
    failed = await pipeline.ingestion.receive(db, message(message_id="wamid.FAIL"))
    await pipeline.worker.process(db, failed.id)
    waiting = await pipeline.ingestion.receive(db, message(message_id="wamid.WAIT"))

    fake_extractor.will_return(candidate(confidence=70))
    scheduler = RecoveryScheduler(pipeline)
    summary = await scheduler.run_once(now=later())

    assert summary == {"released": 0, "stuck": 0, "retried": 1, "recovered": 1, "dispatched": 1}
    db.expire_all()
    db.refresh(failed)
    db.refresh(waiting)
    assert failed.processing_status == ProcessingStatus.COMPLETED.value
    assert waiting.processing_status == ProcessingStatus.COMPLETED.value


async def test_scheduler_start_stop(pipeline):
    scheduler = RecoveryScheduler(pipeline, interval_seconds=3600)

    scheduler.start()
    assert scheduler.running is True
    await scheduler.stop()

    assert scheduler.running is False


def abandon_claim(db, operation, minutes=30):
    """Leave the operation claimed by a worker that never came back"""
    operation.status = OperationStatus.RETRYING.value
    operation.last_attempt_at = utcnow() - timedelta(minutes=minutes)
    db.commit()


async def test_scheduler_takes_back_abandoned_claim(pipeline, db, message, fake_extractor, candidate):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()
    abandon_claim(db, operation)
    submission.processing_status = ProcessingStatus.PROCESSING.value
    submission.processing_started_at = utcnow() - timedelta(hours=2)
    db.commit()

    fake_extractor.will_return(candidate(confidence=70))
    summary = await RecoveryScheduler(pipeline).run_once()

    assert summary["released"] == 1
    assert summary["stuck"] == 1
    assert summary["recovered"] == 1
    db.expire_all()
    operation = db.query(FailedOperation).one()
    assert operation.status == OperationStatus.SUCCEEDED.value
    assert operation.retry_count == 1
    assert db.get(Submission, submission.id).processing_status == ProcessingStatus.COMPLETED.value


async def test_abandoned_claim_on_last_attempt_is_permanent(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()
    operation.retry_count = 2
    abandon_claim(db, operation)

    assert pipeline.recovery.release_stale_claims(db) == 1

    db.refresh(operation)
    assert operation.status == OperationStatus.PERMANENTLY_FAILED.value
    assert operation.retry_count == operation.max_retries
    assert operation.next_retry_at is None


async def test_live_claim_is_not_released(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()
    abandon_claim(db, operation, minutes=1)

    assert pipeline.recovery.release_stale_claims(db) == 0
    db.refresh(operation)
    assert operation.status == OperationStatus.RETRYING.value


async def test_manual_retry_takes_back_abandoned_claim(pipeline, db, message, fake_extractor, candidate):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    abandon_claim(db, db.query(FailedOperation).one())

    fake_extractor.will_return(candidate(confidence=70))
    result = await pipeline.recovery.retry_now(db, submission.id)

    assert result.succeeded is True
    assert result.attempts == 1
    assert result.results[0].retry_count == 1


async def test_failure_during_abandoned_claim_is_queued_again(pipeline, db, message, fake_extractor):
    fake_extractor.will_fail()
    submission = await pipeline.ingestion.receive(db, message())
    await pipeline.worker.process(db, submission.id)
    operation = db.query(FailedOperation).one()
    abandon_claim(db, operation)

    queued = pipeline.recovery.enqueue(db, OperationType.AI_EXTRACTION, submission.id, "extraction did not finish")

    assert queued.id == operation.id
    assert queued.status == OperationStatus.SCHEDULED.value
    assert queued.retry_count == 1
    assert pipeline.recovery.get_stats(db).ready_for_retry == 1

import pytest

from supplier_intake.enums import OperationType, Priority, ValidationStatus
from supplier_intake.errors import BusinessRuleViolation, InvalidStateTransition
from supplier_intake.models import ExtractedProduct, FailedOperation, Submission, ValidationItem
from supplier_intake.schemas.validation import ProductEdits, ValidationFeedback, ValidationFilters
from supplier_intake.services.validation_queue_service import ValidationQueueService

FEEDBACK = {
    "categories": ["extraction_error"],
    "subcategory": "wrong_price",
    "description": "Price is per lot, not per unit",
}


async def extract(pipeline, db, message, fake_extractor, *products, message_id="wamid.HBgM001"):
    fake_extractor.will_return(*products)
    submission = await pipeline.ingestion.receive(db, message(message_id=message_id))
    await pipeline.worker.process(db, submission.id)
    db.refresh(submission)
    return submission


async def queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.Q1", **kwargs):
    await extract(pipeline, db, message, fake_extractor, candidate(confidence=confidence, **kwargs), message_id=message_id)
    return db.query(ValidationItem).filter(ValidationItem.confidence_score == confidence).one()


@pytest.mark.parametrize("confidence,value,expected", [
    (40, None, Priority.HIGH),
    (49.9, 1000, Priority.HIGH),
    (80, 500000, Priority.HIGH),
    (60, None, Priority.MEDIUM),
    (80, 150000, Priority.MEDIUM),
    (80, 50000, Priority.LOW),
    (70, None, Priority.LOW),
])
def test_priority(pipeline, confidence, value, expected):
    assert pipeline.validation.calculate_priority(confidence, value) == expected


@pytest.mark.parametrize("confidence,value,expected", [
    (70, None, Priority.MEDIUM),
    (60, None, Priority.HIGH),
    (40, None, Priority.HIGH),
])
def test_weak_supplier_priority_moves_up(pipeline, confidence, value, expected):
    assert pipeline.validation.calculate_priority(confidence, value, weak_supplier=True) == expected


def test_weak_supplier_escalation_can_be_disabled(pipeline):
    pipeline.validation.escalate_weak_suppliers = False
    assert pipeline.validation.calculate_priority(70, None, weak_supplier=True) == Priority.LOW


def test_auto_approval_policies(pipeline):
    validation = pipeline.validation
    assert validation.qualifies_for_auto_approval([95, 85]) is True
    assert validation.qualifies_for_auto_approval([95, 80]) is False
    assert validation.qualifies_for_auto_approval([]) is False
    assert validation.qualifies_for_auto_approval([90], threshold=95) is False

    validation.policy = "mean"
    assert validation.qualifies_for_auto_approval([95, 80]) is True
    assert validation.qualifies_for_auto_approval([95, 40]) is False


async def test_mixed_confidence_submission(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    submission = await extract(
        pipeline, db, message, fake_extractor,
        candidate("Galaxy S21", confidence=95), candidate("Tecno Spark", confidence=40),
    )

    high, low = submission.products
    assert high.auto_approved is False
    assert high.catalog_product_id is None
    assert low.auto_approved is False
    assert fake_catalog.calls == []

    [item] = db.query(ValidationItem).all()
    assert item.extracted_product_id == low.id
    assert item.priority == Priority.HIGH.value
    assert item.auto_approve_threshold == 85.0
    assert submission.validation_status == ValidationStatus.PENDING.value
    assert submission.auto_approved is False


async def test_approved_review_releases_waiting_products(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    submission = await extract(
        pipeline, db, message, fake_extractor,
        candidate("Galaxy S21", confidence=95), candidate("Tecno Spark", confidence=40),
    )
    [item] = db.query(ValidationItem).all()

    await pipeline.validation.approve(db, item.id, reviewer="awa")

    db.refresh(submission)
    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert sorted(call["name"] for call in fake_catalog.calls) == ["Galaxy S21", "Tecno Spark"]
    high, low = submission.products
    assert high.auto_approved is True
    assert high.catalog_product_id is not None
    assert low.catalog_product_id is not None


async def test_rejected_review_keeps_whole_submission_out_of_catalog(
    pipeline, db, message, fake_extractor, fake_catalog, candidate
):
    submission = await extract(
        pipeline, db, message, fake_extractor,
        candidate("Galaxy S21", confidence=95), candidate("Tecno Spark", confidence=40),
    )
    [item] = db.query(ValidationItem).all()

    await pipeline.validation.reject(db, item.id, FEEDBACK, reviewer="awa")

    db.refresh(submission)
    assert submission.validation_status == ValidationStatus.REJECTED.value
    assert fake_catalog.calls == []
    assert all(p.catalog_product_id is None and not p.auto_approved for p in submission.products)


async def test_mean_policy_still_queues_weak_submission(pipeline, db, message, fake_extractor, candidate):
    pipeline.validation.policy = "mean"

    submission = await extract(
        pipeline, db, message, fake_extractor, candidate(confidence=95), candidate("Tecno Spark", confidence=40)
    )

    assert db.query(ValidationItem).count() == 1
    assert submission.validation_status == ValidationStatus.PENDING.value


async def test_mean_policy_auto_approves_whole_submission(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    pipeline.validation.policy = "mean"

    submission = await extract(
        pipeline, db, message, fake_extractor, candidate(confidence=95), candidate("Tecno Spark", confidence=80)
    )

    assert db.query(ValidationItem).count() == 0
    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert submission.auto_approved is True
    assert submission.validated_by == "system"
    assert all(p.auto_approved for p in submission.products)
    assert len(fake_catalog.calls) == 2


async def test_routing_twice_does_not_duplicate(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    submission = await extract(
        pipeline, db, message, fake_extractor, candidate(confidence=95), candidate("Tecno Spark", confidence=40)
    )

    result = await pipeline.validation.route_submission(db, submission.id)

    assert result == {"auto_approved": False, "queued": 0, "pushed": 0}
    assert db.query(ValidationItem).count() == 1
    assert fake_catalog.calls == []


async def test_queue_order_and_filters(pipeline, db, message, fake_extractor, candidate):
    for n, confidence in enumerate([80, 45, 65, 30]):
        await extract(pipeline, db, message, fake_extractor, candidate(confidence=confidence), message_id=f"wamid.{n}")

    items, total = pipeline.validation.list_pending(db, ValidationFilters())
    assert total == 4
    assert [i.confidence_score for i in items] == [30, 45, 65, 80]

    items, total = pipeline.validation.list_pending(db, ValidationFilters(priority="high"))
    assert [i.confidence_score for i in items] == [30, 45]

    items, total = pipeline.validation.list_pending(db, ValidationFilters(min_confidence=50, max_confidence=70))
    assert [i.confidence_score for i in items] == [65]

    items, total = pipeline.validation.list_pending(db, ValidationFilters(page=2, limit=3))
    assert total == 4
    assert [i.confidence_score for i in items] == [80]


async def test_approve_pushes_once(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)

    approved = await pipeline.validation.approve(
        db, item.id, reviewer="awa", notes="checked", edits=ProductEdits(price=45000, quantity=3)
    )

    assert approved.status == ValidationStatus.APPROVED.value
    assert approved.resolved_by == "awa"
    assert approved.edits == {"price": 45000, "quantity": 3}
    assert len(fake_catalog.calls) == 1
    assert fake_catalog.calls[0]["price"] == 45000.0
    assert fake_catalog.calls[0]["quantity"] == 3
    product = db.query(ExtractedProduct).one()
    assert product.catalog_product_id == "catalog-1"
    submission = db.query(Submission).one()
    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert submission.validated_by == "awa"


async def test_catalog_outage_keeps_approval(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)
    fake_catalog.always_fail = True

    await pipeline.validation.approve(db, item.id, reviewer="awa")

    assert len(fake_catalog.calls) == 1
    operation = db.query(FailedOperation).one()
    assert operation.operation_type == OperationType.INVENTORY_UPDATE.value
    assert db.query(Submission).one().validation_status == ValidationStatus.APPROVED.value
    assert db.query(ValidationItem).one().status == ValidationStatus.APPROVED.value

    with pytest.raises(InvalidStateTransition):
        await pipeline.validation.approve(db, item.id, reviewer="moussa")
    assert len(fake_catalog.calls) == 1


async def test_reject_records_feedback(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)

    rejected = await pipeline.validation.reject(db, item.id, FEEDBACK, reviewer="awa")

    assert rejected.status == ValidationStatus.REJECTED.value
    assert rejected.feedback["categories"] == ["extraction_error"]
    assert rejected.feedback["severity"] == "medium"
    assert rejected.resolution_notes == "Price is per lot, not per unit"
    assert db.query(Submission).one().validation_status == ValidationStatus.REJECTED.value
    assert fake_catalog.calls == []


@pytest.mark.parametrize("feedback", [
    {"categories": [], "description": "no reason"},
    {"categories": ["extraction_error"], "description": "   "},
    {"categories": ["extraction_error"], "subcategory": "blurry_image", "description": "wrong sub"},
    {"categories": ["not_a_category"], "description": "bad"},
])
async def test_invalid_feedback_is_refused(pipeline, db, message, fake_extractor, candidate, feedback):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)

    with pytest.raises(BusinessRuleViolation):
        await pipeline.validation.reject(db, item.id, feedback)

    db.refresh(item)
    assert item.status == ValidationStatus.PENDING.value


async def test_reject_accepts_feedback_model(pipeline, db, message, fake_extractor, candidate):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)
    feedback = ValidationFeedback(categories=["duplicate_product"], description="Already listed", severity="low")

    rejected = await pipeline.validation.reject(db, item.id, feedback)

    assert rejected.feedback["categories"] == ["duplicate_product"]


async def test_submission_stays_pending_until_last_item_decided(pipeline, db, message, fake_extractor, candidate):
    await extract(
        pipeline, db, message, fake_extractor,
        candidate("iPhone 11", confidence=60), candidate("iPhone 12", confidence=65),
    )
    first = db.query(ValidationItem).filter(ValidationItem.confidence_score == 60).one()
    second = db.query(ValidationItem).filter(ValidationItem.confidence_score == 65).one()

    await pipeline.validation.approve(db, first.id, reviewer="awa")

    submission = db.query(Submission).one()
    assert submission.validation_status == ValidationStatus.PENDING.value
    items, total = pipeline.validation.list_pending(db, ValidationFilters())
    assert [i.id for i in items] == [second.id]
    assert total == 1

    await pipeline.validation.approve(db, second.id, reviewer="moussa")

    db.refresh(submission)
    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert submission.validated_by == "moussa"
    assert pipeline.validation.list_pending(db, ValidationFilters())[1] == 0


async def test_one_approval_is_enough_to_approve_submission(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    await extract(
        pipeline, db, message, fake_extractor,
        candidate("iPhone 11", confidence=60), candidate("iPhone 12", confidence=65),
    )
    first = db.query(ValidationItem).filter(ValidationItem.confidence_score == 60).one()
    second = db.query(ValidationItem).filter(ValidationItem.confidence_score == 65).one()

    await pipeline.validation.approve(db, first.id)
    await pipeline.validation.reject(db, second.id, FEEDBACK)

    assert db.query(Submission).one().validation_status == ValidationStatus.APPROVED.value
    assert [call["name"] for call in fake_catalog.calls] == ["iPhone 11"]


async def test_all_rejected_rejects_submission(pipeline, db, message, fake_extractor, candidate):
    await extract(
        pipeline, db, message, fake_extractor,
        candidate("iPhone 11", confidence=60), candidate("iPhone 12", confidence=65),
    )
    items = db.query(ValidationItem).all()

    for item in items:
        await pipeline.validation.reject(db, item.id, FEEDBACK)

    assert db.query(Submission).one().validation_status == ValidationStatus.REJECTED.value


async def test_bulk_approve_is_partial(pipeline, db, message, fake_extractor, fake_catalog, candidate):
    first = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.A")
    second = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=61, message_id="wamid.B")
    first_id, second_id = str(first.id), str(second.id)

    result = await pipeline.validation.bulk_approve(db, [first_id, "not-a-uuid", second_id, first_id], reviewer="awa")

    assert result.successful == [first_id, second_id]
    assert [f.id for f in result.failed] == ["not-a-uuid", first_id]
    assert result.failed[1].code == "INVALID_STATE_TRANSITION"
    assert result.total_processed == 4
    assert len(fake_catalog.calls) == 2


async def test_bulk_reject(pipeline, db, message, fake_extractor, candidate):
    item = await queued_item(pipeline, db, message, fake_extractor, candidate)

    result = await pipeline.validation.bulk_reject(db, [str(item.id)], FEEDBACK, reviewer="awa")

    assert result.successful == [str(item.id)]
    assert result.failed == []


async def test_bulk_reject_reports_each_failure(pipeline, db, message, fake_extractor, candidate):
    first = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.A")
    second = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=61, message_id="wamid.B")
    decided = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=62, message_id="wamid.C")
    await pipeline.validation.approve(db, decided.id)
    first_id, second_id, decided_id = str(first.id), str(second.id), str(decided.id)

    result = await pipeline.validation.bulk_reject(
        db, [first_id, "bogus", decided_id, second_id], FEEDBACK, reviewer="awa"
    )

    assert result.successful == [first_id, second_id]
    assert [(f.id, f.code) for f in result.failed] == [
        ("bogus", "NOT_FOUND"),
        (decided_id, "INVALID_STATE_TRANSITION"),
    ]
    assert result.total_processed == 4
    statuses = {str(item.id): item.status for item in db.query(ValidationItem).all()}
    assert statuses == {
        first_id: ValidationStatus.REJECTED.value,
        second_id: ValidationStatus.REJECTED.value,
        decided_id: ValidationStatus.APPROVED.value,
    }


async def test_stats(pipeline, db, message, fake_extractor, candidate):
    approved = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.A")
    rejected = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=61, message_id="wamid.B")
    await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=40, message_id="wamid.C")
    await pipeline.validation.approve(db, approved.id)
    await pipeline.validation.reject(db, rejected.id, FEEDBACK)

    stats = pipeline.validation.get_stats(db)

    assert stats.pending == 1
    assert stats.high_priority == 1
    assert stats.approved_today == 1
    assert stats.rejected_today == 1
    assert stats.approval_rate == 50.0
    assert stats.top_rejection_categories == [{"category": "extraction_error", "count": 1}]


def test_feedback_categories(pipeline):
    categories = pipeline.validation.feedback_categories()
    assert [c.id for c in categories] == [
        "extraction_error", "poor_quality", "duplicate_product", "invalid_content", "policy_violation",
    ]


async def test_supplier_with_poor_history_gets_stricter_threshold(
    pipeline, db, message, fake_extractor, fake_catalog, candidate
):
    rejected = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.A")
    await pipeline.validation.reject(db, rejected.id, FEEDBACK)

    submission = await extract(pipeline, db, message, fake_extractor, candidate(confidence=90), message_id="wamid.B")

    assert submission.validation_status == ValidationStatus.PENDING.value
    item = db.query(ValidationItem).filter(ValidationItem.submission_id == submission.id).one()
    assert item.auto_approve_threshold == 95.0
    assert item.priority == Priority.MEDIUM.value
    assert fake_catalog.calls == []
    items, _ = pipeline.validation.list_pending(db, ValidationFilters())
    assert [i.id for i in items] == [item.id]


async def test_supplier_with_good_history_keeps_default_threshold(pipeline, db, message, fake_extractor, candidate):
    approved = await queued_item(pipeline, db, message, fake_extractor, candidate, confidence=60, message_id="wamid.A")
    await pipeline.validation.approve(db, approved.id)

    submission = await extract(pipeline, db, message, fake_extractor, candidate(confidence=90), message_id="wamid.B")

    assert submission.validation_status == ValidationStatus.APPROVED.value
    assert submission.auto_approved is True


async def test_required_history_holds_back_new_supplier(pipeline, db, message, fake_extractor, candidate):
    pipeline.validation.min_supplier_history = 10

    submission = await extract(pipeline, db, message, fake_extractor, candidate(confidence=92))

    assert submission.validation_status == ValidationStatus.PENDING.value
    item = db.query(ValidationItem).one()
    assert item.auto_approve_threshold == 95.0


def test_weak_supplier_rules(pipeline):
    validation = pipeline.validation
    assert validation.is_weak_supplier(None) is False
    assert validation.threshold_for(False) == 85.0
    assert validation.threshold_for(True) == 95.0

    validation.min_supplier_history = 10
    assert validation.is_weak_supplier(None) is True


async def test_review_item_carries_reviewer_context(pipeline, db, message, fake_extractor, candidate):
    await extract(
        pipeline, db, message, fake_extractor,
        candidate("iPhone 11", confidence=40), candidate("iPhone 12", confidence=80),
    )
    low = db.query(ValidationItem).filter(ValidationItem.confidence_score == 40).one()
    high = db.query(ValidationItem).filter(ValidationItem.confidence_score == 80).one()

    assert low.original_content["type"] == "text"
    assert "iPhone 12 Pro" in low.original_content["content"]
    assert low.original_content["media_ref"] is None
    assert low.related_validations == [high.id]
    assert [a["type"] for a in low.suggested_actions] == ["create", "update"]
    assert low.suggested_actions[1]["confidence"] == 32.0
    assert low.suggested_actions[1]["suggested_edits"] == {"name": "iPhone 11", "category": "smartphones"}
    assert [a["type"] for a in high.suggested_actions] == ["create"]
    assert low.estimated_review_minutes == 8
    assert high.estimated_review_minutes == 3


def test_suppliers_without_history_are_weak_by_default():
    validation = ValidationQueueService(inventory=None)
    assert validation.is_weak_supplier(None) is True
    assert validation.threshold_for(True) == 95.0

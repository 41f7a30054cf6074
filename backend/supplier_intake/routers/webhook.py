"""
WhatsApp Business webhook.

Every message of a delivery is ingested independently and reported in the
response. Duplicates and permanent rejections answer 200 so the provider does
not redeliver; a transient failure (directory unreachable) answers 502 so it
does, and the redelivery is deduplicated by message id.
"""
import json
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from supplier_intake.database import get_db
from supplier_intake.enums import ProcessingStatus
from supplier_intake.errors import CollaboratorError, DuplicateSubmission, MalformedPayload, PipelineError
from supplier_intake.models.submission import Submission
from supplier_intake.schemas.webhook import IngestResult, WebhookResponse
from supplier_intake.services.pipeline import Pipeline, get_pipeline
from supplier_intake.utils.whatsapp import parse_message, parse_webhook_payload, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhook"])


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_subscription(
    mode: str = Query(None, alias="hub.mode"),
    token: str = Query(None, alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Subscription handshake: echo the challenge when the verify token matches"""
    expected = pipeline.settings.whatsapp_verify_token
    if mode == "subscribe" and expected and token == expected:
        logger.info("WhatsApp webhook subscription verified")
        return challenge
    raise HTTPException(status_code=403, detail="Webhook verification failed")


def _dispatch_if_waiting(db: Session, pipeline: Pipeline, submission_id, background_tasks: BackgroundTasks) -> None:
    """Queue extraction for a redelivered message whose first dispatch never ran"""
    submission = db.query(Submission).filter(Submission.id == submission_id).first()
    if submission and submission.processing_status == ProcessingStatus.PENDING.value and not submission.media_pending:
        logger.info(f"Redelivered message for pending submission {submission_id}, dispatching extraction")
        background_tasks.add_task(pipeline.process_in_background, submission.id)


@router.post("/whatsapp", response_model=WebhookResponse)
async def receive_whatsapp(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Ingest every supplier message of a WhatsApp delivery"""
    body = await request.body()

    secret = pipeline.settings.whatsapp_webhook_secret
    if secret:
        verify_signature(body, request.headers.get("X-Hub-Signature-256"), secret)

    try:
        payload = json.loads(body or b"null")
    except ValueError:
        raise MalformedPayload("Webhook body is not valid JSON")

    auto_process = pipeline.settings.auto_process_submissions
    raw_messages = parse_webhook_payload(payload)
    results = []
    transient = None

    for raw in raw_messages:
        source_message_id = str(raw.get("id") or "") if isinstance(raw, dict) else ""
        try:
            message = parse_message(raw)
            submission = await pipeline.ingestion.receive(db, message)
        except DuplicateSubmission as e:
            logger.info(f"Duplicate delivery of message {e.source_message_id}")
            results.append(IngestResult(
                source_message_id=e.source_message_id,
                submission_id=e.existing_id,
                status="duplicate",
                duplicate=True,
            ))
            if auto_process and e.existing_id:
                _dispatch_if_waiting(db, pipeline, e.existing_id, background_tasks)
            continue
        except PipelineError as e:
            db.rollback()
            logger.warning(f"Message {source_message_id or '<no id>'} rejected: {e.code} {e.message}")
            results.append(IngestResult(
                source_message_id=source_message_id,
                status="rejected",
                error=e.message,
                code=e.code,
            ))
            if e.retryable:
                transient = e
            continue

        results.append(IngestResult(
            source_message_id=message.source_message_id,
            submission_id=submission.id,
            status="accepted",
        ))
        if auto_process and not submission.media_pending:
            background_tasks.add_task(pipeline.process_in_background, submission.id)

    accepted = sum(1 for r in results if r.status == "accepted")
    logger.info(f"Webhook delivery: {len(raw_messages)} message(s), {accepted} accepted")

    if transient is not None:
        # Ask the provider to redeliver; what was accepted still gets processed
        error = CollaboratorError(f"Webhook delivery partially failed: {transient.message}")
        logger.error(f"{error.code} on webhook delivery: {error.message}")
        return JSONResponse(
            status_code=error.http_status,
            content={"detail": error.message, "code": error.code, "retryable": error.retryable},
            background=background_tasks,
        )

    return WebhookResponse(received=len(raw_messages), accepted=accepted, results=results)

"""
Ingestion Service - the gateway for inbound supplier messages.

Validates and classifies a message, resolves the supplier, persists a
pending Submission and downloads its media. Permanent problems (unsupported
type, duplicate, malformed payload, unknown supplier) fail fast and are never
queued for retry; a failed media download keeps the submission and queues a
webhook operation.
"""
import logging
import os
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supplier_intake.enums import ContentType, OperationType, ProcessingStatus, ValidationStatus
from supplier_intake.errors import DuplicateSubmission, MalformedPayload, NotFound, UnsupportedContentType
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.models.submission import Submission, PENDING_MEDIA_PREFIX
from supplier_intake.schemas.webhook import InboundMessage
from supplier_intake.services.media_service import WhatsAppMediaClient
from supplier_intake.services.recovery_service import RecoveryService
from supplier_intake.services.storage_service import StorageService
from supplier_intake.services.supplier_directory import SupplierDirectory

logger = logging.getLogger(__name__)

MEDIA_MESSAGE_TYPES = {
    "image": ContentType.IMAGE,
    "audio": ContentType.VOICE,
    "voice": ContentType.VOICE,
}


def classify(message: InboundMessage) -> ContentType:
    """
    Map a WhatsApp message type to a submission content type.

    text -> text, image -> image, document with a PDF mime type or extension
    -> pdf, audio/voice -> voice. Anything else is unsupported.
    """
    if message.message_type == "text":
        if not message.text or not message.text.strip():
            raise MalformedPayload(f"Text message {message.source_message_id} has no body")
        return ContentType.TEXT

    if message.message_type == "document":
        mime = (message.mime_type or "").lower()
        extension = os.path.splitext(message.filename or "")[1].lower()
        if mime != "application/pdf" and extension != ".pdf":
            raise UnsupportedContentType(f"Document {message.filename or message.source_message_id} is not a PDF")
        content_type = ContentType.PDF
    elif message.message_type in MEDIA_MESSAGE_TYPES:
        content_type = MEDIA_MESSAGE_TYPES[message.message_type]
    else:
        raise UnsupportedContentType(f"Unsupported message type: {message.message_type}")

    if not message.media_id:
        raise MalformedPayload(f"{message.message_type} message {message.source_message_id} has no media id")
    return content_type


class IngestionService:
    def __init__(
        self,
        directory: SupplierDirectory,
        media_client: WhatsAppMediaClient,
        storage: StorageService,
        recovery: RecoveryService,
    ):
        self.directory = directory
        self.media_client = media_client
        self.storage = storage
        self.recovery = recovery

    async def receive(self, db: Session, message: InboundMessage) -> Submission:
        """
        Persist a new pending submission for an inbound message.

        Raises:
            UnsupportedContentType, MalformedPayload, DuplicateSubmission, UnknownSupplier
        """
        content_type = classify(message)

        existing = db.query(Submission).filter(Submission.source_message_id == message.source_message_id).first()
        if existing:
            raise DuplicateSubmission(message.source_message_id, existing.id)

        supplier = await self.directory.get_supplier(message.sender)

        submission = Submission(
            source_message_id=message.source_message_id,
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            supplier_phone=supplier.phone or message.sender,
            content_type=content_type.value,
            original_content=message.text or "",
            media_ref=f"{PENDING_MEDIA_PREFIX}{message.media_id}" if message.media_id else None,
            media_mime_type=message.mime_type,
            media_filename=message.filename,
            processing_status=ProcessingStatus.PENDING.value,
            validation_status=ValidationStatus.PENDING.value,
            received_at=message.timestamp,
        )
        db.add(submission)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same message won the insert
            db.rollback()
            existing = db.query(Submission).filter(Submission.source_message_id == message.source_message_id).first()
            raise DuplicateSubmission(message.source_message_id, existing.id if existing else None)
        db.refresh(submission)

        logger.info(
            f"Received {content_type.value} submission {submission.id} from supplier {supplier.id} "
            f"(message {message.source_message_id})"
        )

        if submission.media_pending:
            await self.download_media(db, submission)
        return submission

    async def download_media(self, db: Session, submission: Submission, enqueue_on_failure: bool = True) -> bool:
        """
        Fetch pending media from WhatsApp into storage.

        Returns:
            True once the media is stored; False when the download failed and was queued
        """
        media_id = submission.media_ref[len(PENDING_MEDIA_PREFIX):]
        try:
            content, mime_type = await self.media_client.fetch(media_id)
            mime_type = submission.media_mime_type or mime_type
            extension = self.storage.extension_for(mime_type, submission.media_filename)
            storage_key = self.storage.upload_file(content, f"{submission.source_message_id}{extension}", mime_type)
        except Exception as e:
            if not enqueue_on_failure:
                raise
            logger.error(f"Media download failed for submission {submission.id}: {str(e)}")
            self.recovery.enqueue(
                db,
                OperationType.WEBHOOK,
                submission.id,
                str(e),
                metadata={"media_id": media_id, "stage": "media_download"},
            )
            return False

        submission.media_ref = storage_key
        submission.media_mime_type = mime_type
        db.commit()
        logger.info(f"Stored media for submission {submission.id} at {storage_key}")
        return True

    async def retry_operation(self, db: Session, operation: FailedOperation) -> None:
        """Recovery handler for webhook: re-download the media"""
        submission = db.query(Submission).filter(Submission.id == operation.submission_id).first()
        if not submission:
            raise NotFound(f"Submission {operation.submission_id} not found")
        if not submission.media_pending:
            return
        await self.download_media(db, submission, enqueue_on_failure=False)

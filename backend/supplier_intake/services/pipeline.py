"""
Pipeline wiring: builds every service from settings and registers the
per-stage recovery handlers.

Routers depend on `get_pipeline`; tests build their own instance with
`create_pipeline` and fake collaborators.
"""
import logging
from typing import Optional
from uuid import UUID
from sqlalchemy.orm import Session, sessionmaker

from supplier_intake.config import Settings, settings as default_settings
from supplier_intake.database import SessionLocal
from supplier_intake.enums import OperationType, ProcessingStatus
from supplier_intake.errors import PipelineError
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.services.catalog_client import CatalogClient
from supplier_intake.services.extraction_service import Extractor, OpenAIExtractionService
from supplier_intake.services.extraction_worker import ExtractionWorker
from supplier_intake.services.ingestion_service import IngestionService
from supplier_intake.services.inventory_service import InventoryService
from supplier_intake.services.media_service import WhatsAppMediaClient
from supplier_intake.services.recovery_service import RecoveryService
from supplier_intake.services.reporting_service import ReportingService
from supplier_intake.services.storage_service import StorageService
from supplier_intake.services.supplier_directory import SupplierDirectory
from supplier_intake.services.supplier_performance_service import SupplierPerformanceService
from supplier_intake.services.validation_queue_service import ValidationQueueService

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        extractor: Extractor,
        catalog: CatalogClient,
        directory: SupplierDirectory,
        media_client: WhatsAppMediaClient,
        storage: StorageService,
    ):
        self.settings = settings
        self.session_factory = session_factory

        self.recovery = RecoveryService(
            max_retries=settings.recovery_max_retries,
            backoff_base_seconds=settings.recovery_backoff_base_seconds,
            backoff_max_seconds=settings.recovery_backoff_max_seconds,
            stale_claim_seconds=settings.recovery_stale_claim_minutes * 60,
        )
        self.inventory = InventoryService(catalog, self.recovery)
        self.suppliers = SupplierPerformanceService(
            excellent_rate=settings.supplier_tier_excellent_rate,
            good_rate=settings.supplier_tier_good_rate,
        )
        self.validation = ValidationQueueService(
            self.inventory,
            suppliers=self.suppliers,
            auto_approve_threshold=settings.auto_approve_threshold,
            auto_approve_policy=settings.auto_approve_policy,
            weak_supplier_threshold=settings.auto_approve_weak_supplier_threshold,
            min_supplier_history=settings.auto_approve_min_supplier_history,
            min_supplier_approval_rate=settings.auto_approve_min_supplier_approval_rate,
            high_confidence_below=settings.priority_high_confidence_below,
            medium_confidence_below=settings.priority_medium_confidence_below,
            high_value=settings.priority_high_value,
            medium_value=settings.priority_medium_value,
            escalate_weak_suppliers=settings.priority_escalate_weak_suppliers,
        )
        self.ingestion = IngestionService(directory, media_client, storage, self.recovery)
        self.worker = ExtractionWorker(
            extractor,
            self.validation,
            self.recovery,
            storage,
            timeout_seconds=settings.extraction_timeout_seconds,
        )
        self.reporting = ReportingService(
            confidence_high_bucket=settings.confidence_high_bucket,
            confidence_medium_bucket=settings.confidence_medium_bucket,
            alert_permanently_failed_threshold=settings.alert_permanently_failed_threshold,
            alert_stale_validation_hours=settings.alert_stale_validation_hours,
            alert_failure_rate_percent=settings.alert_failure_rate_percent,
            alert_pending_backlog=settings.alert_pending_backlog,
        )

        self.recovery.register_handler(OperationType.WEBHOOK, self._retry_webhook)
        self.recovery.register_handler(OperationType.AI_EXTRACTION, self.worker.retry_extraction)
        self.recovery.register_handler(OperationType.VALIDATION, self.worker.retry_routing)
        self.recovery.register_handler(OperationType.INVENTORY_UPDATE, self.inventory.retry_operation)

    async def _retry_webhook(self, db: Session, operation: FailedOperation) -> None:
        """Re-download the media, then hand the submission to extraction"""
        await self.ingestion.retry_operation(db, operation)
        if not self.settings.auto_process_submissions:
            return
        submission = self.worker.get_submission(db, operation.submission_id)
        if submission.processing_status == ProcessingStatus.PENDING.value and not submission.media_pending:
            await self.worker.process(db, submission.id)

    async def process_in_background(self, submission_id: UUID) -> None:
        """
        Extract a freshly received submission outside the request.

        Uses its own session; failures are already routed to the recovery
        queue by the worker, anything left is logged for the pending sweep.
        """
        db = self.session_factory()
        try:
            submission = self.worker.get_submission(db, submission_id)
            if submission.processing_status != ProcessingStatus.PENDING.value or submission.media_pending:
                logger.info(f"Submission {submission_id} not ready for extraction ({submission.processing_status})")
                return
            products = await self.worker.process(db, submission_id)
            logger.info(f"Background extraction of submission {submission_id} produced {len(products)} product(s)")
        except PipelineError as e:
            logger.warning(f"Background extraction of submission {submission_id} skipped: {e.message}")
        except Exception as e:
            logger.error(f"Background extraction of submission {submission_id} failed: {str(e)}", exc_info=True)
        finally:
            db.close()


def create_pipeline(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    extractor: Optional[Extractor] = None,
    catalog: Optional[CatalogClient] = None,
    directory: Optional[SupplierDirectory] = None,
    media_client: Optional[WhatsAppMediaClient] = None,
    storage: Optional[StorageService] = None,
) -> Pipeline:
    settings = settings or default_settings
    timeout = settings.collaborator_timeout_seconds

    if extractor is None:
        extractor = OpenAIExtractionService(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            vision_model=settings.openai_vision_model,
            transcription_model=settings.openai_transcription_model,
            timeout=settings.extraction_timeout_seconds,
            fallback_to_rules=settings.extraction_fallback_to_rules,
            default_currency=settings.default_currency,
        )

    return Pipeline(
        settings=settings,
        session_factory=session_factory or SessionLocal,
        extractor=extractor,
        catalog=catalog or CatalogClient(settings.catalog_api_url, settings.catalog_api_key, timeout),
        directory=directory or SupplierDirectory(settings.supplier_directory_url, settings.supplier_directory_api_key, timeout),
        media_client=media_client or WhatsAppMediaClient(
            settings.whatsapp_access_token, settings.whatsapp_api_base_url, timeout
        ),
        storage=storage or StorageService(settings.local_storage_dir),
    )


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = create_pipeline()
    return _pipeline

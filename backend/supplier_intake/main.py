from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supplier_intake import __version__
from supplier_intake.routers import webhook, submissions, validations, recovery, dashboard
from supplier_intake.config import settings
from supplier_intake.errors import PipelineError
from supplier_intake.services.pipeline import get_pipeline
from supplier_intake.services.recovery_scheduler import RecoveryScheduler
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

# Log startup information
logger.info("="*60)
logger.info("Starting Supplier Intake API")
logger.info("="*60)
logger.info(f"OpenAI API Key configured: {bool(settings.openai_api_key)}")
logger.info(f"OpenAI Models: text={settings.openai_model}, vision={settings.openai_vision_model}")
logger.info(f"Webhook signature check: {bool(settings.whatsapp_webhook_secret)}")
logger.info(f"Catalog configured: {bool(settings.catalog_api_url)}")
logger.info(f"Auto-approve: {settings.auto_approve_policy} >= {settings.auto_approve_threshold}")
logger.info("="*60)

app = FastAPI(
    title="Supplier Intake API",
    description="WhatsApp supplier submission ingestion, extraction and review",
    version=__version__
)


def parse_cors_origins(origins_str: str) -> list:
    """Parse CORS origins string into a list"""
    return [origin.strip() for origin in origins_str.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=parse_cors_origins(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhook.router)  # WhatsApp Business webhook
app.include_router(submissions.router)
app.include_router(validations.router)  # Admin review queue
app.include_router(recovery.router)
app.include_router(dashboard.router)

scheduler = None


@app.on_event("startup")
async def start_scheduler():
    global scheduler
    if not settings.recovery_scheduler_enabled:
        logger.info("Recovery scheduler disabled")
        return
    scheduler = RecoveryScheduler(get_pipeline())
    scheduler.start()


@app.on_event("shutdown")
async def stop_scheduler():
    if scheduler is not None:
        await scheduler.stop()


@app.get("/")
def root():
    return {"message": "Supplier Intake API", "version": __version__}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Render domain errors with their status and code"""
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {str(exc)}", "code": "INTERNAL_ERROR", "retryable": False},
    )

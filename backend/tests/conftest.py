import os

# Must be set before supplier_intake.database builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RECOVERY_SCHEDULER_ENABLED"] = "false"

import asyncio
from datetime import datetime
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import supplier_intake.models  # noqa: F401
from supplier_intake.config import Settings
from supplier_intake.database import Base, get_db
from supplier_intake.errors import CollaboratorError, ExtractionError, UnknownSupplier
from supplier_intake.schemas.extraction import (
    ExtractionMetadata,
    ExtractionResult,
    ProductCandidate,
    STRUCTURED_FIELDS,
)
from supplier_intake.schemas.webhook import InboundMessage
from supplier_intake.services.extraction_service import Extractor
from supplier_intake.services.pipeline import create_pipeline, get_pipeline
from supplier_intake.services.storage_service import StorageService
from supplier_intake.services.supplier_directory import SupplierRecord

KNOWN_PHONE = "2250700000001"
OTHER_PHONE = "2250700000002"


class FakeExtractor(Extractor):
    """
    Plays back planned outcomes in order; the last one repeats.
    An exception in the plan is raised instead of returned.
    """

    def __init__(self):
        self.outcomes = []
        self.calls = []
        self.delay = 0.0
        self.on_extract = None

    @staticmethod
    def _result(products, transcript=None):
        return ExtractionResult(products=list(products), transcript=transcript, ai_model="fake-model")

    def will_return(self, *products, transcript=None):
        self.outcomes = [self._result(products, transcript)]

    def then_return(self, *products, transcript=None):
        self.outcomes.append(self._result(products, transcript))

    def will_fail(self, message="model unavailable"):
        self.outcomes = [ExtractionError(message)]

    def then_fail(self, message="model unavailable"):
        self.outcomes.append(ExtractionError(message))

    async def extract(self, content_type, content, media=None):
        self.calls.append((content_type, content, media))
        if self.on_extract:
            self.on_extract()
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.outcomes:
            raise ExtractionError("nothing planned")
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome.model_copy(deep=True)


class FakeCatalog:
    def __init__(self):
        self.calls = []
        self.failures_left = 0
        self.always_fail = False

    async def create_or_update_product(self, payload: dict) -> str:
        self.calls.append(payload)
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(self.failures_left - 1, 0)
            raise CollaboratorError("Catalog update failed: 503 Service Unavailable")
        return f"catalog-{len(self.calls)}"


class FakeDirectory:
    def __init__(self):
        self.suppliers = {
            KNOWN_PHONE: SupplierRecord(id="sup-001", name="Abidjan Phones", phone=KNOWN_PHONE),
            OTHER_PHONE: SupplierRecord(id="sup-002", name="Plateau Electronics", phone=OTHER_PHONE),
        }
        self.unavailable = False
        self.unreachable = set()

    async def get_supplier(self, phone_or_id: str) -> SupplierRecord:
        if self.unavailable or phone_or_id in self.unreachable:
            raise CollaboratorError("Supplier directory unavailable: connection refused")
        if phone_or_id not in self.suppliers:
            raise UnknownSupplier(f"No supplier registered for {phone_or_id}")
        return self.suppliers[phone_or_id]


class FakeMediaClient:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.content = b"\x89PNG fake image bytes"
        self.mime_type = "image/jpeg"

    async def fetch(self, media_id: str):
        self.calls.append(media_id)
        if self.fail:
            raise CollaboratorError(f"Media download failed for {media_id}: timeout")
        return self.content, self.mime_type


def make_candidate(
    name: str = "iPhone 12 Pro 128GB",
    confidence: float = 90.0,
    price: Optional[float] = 50000.0,
    quantity: int = 1,
    condition: str = "refurbished",
    grade: Optional[str] = "A",
) -> ProductCandidate:
    return ProductCandidate(
        name=name,
        brand="Apple",
        category="smartphones",
        condition=condition,
        grade=grade,
        price=price,
        currency="XOF",
        quantity=quantity,
        specifications={"storage": "128GB"},
        confidence_score=confidence,
        field_confidences={field: confidence for field in STRUCTURED_FIELDS},
        extraction_metadata=ExtractionMetadata(ai_model="fake-model", source_type="text"),
    )


def make_message(
    message_id: str = "wamid.HBgM001",
    sender: str = KNOWN_PHONE,
    message_type: str = "text",
    text: Optional[str] = "iPhone 12 Pro 128GB reconditionné grade A\nPrix: 350 000 FCFA",
    media_id: Optional[str] = None,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> InboundMessage:
    return InboundMessage(
        source_message_id=message_id,
        sender=sender,
        message_type=message_type,
        text=text,
        media_id=media_id,
        mime_type=mime_type,
        filename=filename,
        timestamp=datetime(2026, 10, 1, 9, 30),
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        local_storage_dir=str(tmp_path / "media"),
        auto_approve_threshold=85.0,
        auto_approve_policy="all",
        auto_approve_min_supplier_history=0,
        recovery_max_retries=3,
        recovery_backoff_base_seconds=30,
        recovery_backoff_max_seconds=3600,
        auto_process_submissions=True,
        whatsapp_webhook_secret=None,
        whatsapp_verify_token="verify-me",
    )


@pytest.fixture
def fake_extractor():
    extractor = FakeExtractor()
    extractor.will_return(make_candidate())
    return extractor


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def fake_directory():
    return FakeDirectory()


@pytest.fixture
def fake_media():
    return FakeMediaClient()


@pytest.fixture
def pipeline(settings, session_factory, fake_extractor, fake_catalog, fake_directory, fake_media, tmp_path):
    return create_pipeline(
        settings=settings,
        session_factory=session_factory,
        extractor=fake_extractor,
        catalog=fake_catalog,
        directory=fake_directory,
        media_client=fake_media,
        storage=StorageService(str(tmp_path / "media")),
    )


@pytest.fixture
def candidate():
    return make_candidate


@pytest.fixture
def message():
    return make_message


@pytest.fixture
def client(pipeline, session_factory):
    from supplier_intake.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

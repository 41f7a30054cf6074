import json
import threading
from io import BytesIO
from types import SimpleNamespace

import pytest
from PIL import Image

from supplier_intake.enums import ContentType
from supplier_intake.errors import ExtractionError
from supplier_intake.schemas.extraction import MediaPayload
from supplier_intake.services.extraction_service import (
    OpenAIExtractionService,
    RuleBasedExtractor,
    UNSCORED_FIELD_CONFIDENCE,
    normalize_candidates,
)


def build_service(**overrides) -> OpenAIExtractionService:
    options = dict(
        api_key=None,
        model="gpt-4o-mini",
        vision_model="gpt-4o",
        transcription_model="whisper-1",
        fallback_to_rules=True,
        default_currency="XOF",
    )
    options.update(overrides)
    return OpenAIExtractionService(**options)


class FakeCompletions:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=json.dumps(self.payload))
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeTranscriptions:
    def __init__(self, text):
        self.text = text

    async def create(self, **kwargs):
        return SimpleNamespace(text=self.text)


def fake_client(payload=None, error=None, transcript=None):
    return SimpleNamespace(
        chat=SimpleNamespace(completions=FakeCompletions(payload, error)),
        audio=SimpleNamespace(transcriptions=FakeTranscriptions(transcript)),
    )


def test_normalize_fills_missing_field_confidences():
    data = {"products": [{
        "name": "Galaxy S21",
        "brand": "Samsung",
        "price": "250 000",
        "field_confidence": {"name": 95, "price": 140},
        "confidence": 88,
    }]}

    [product] = normalize_candidates(data, "gpt-4o-mini", "text", "XOF")

    assert product.price == 250000.0
    assert product.field_confidences["name"] == 95
    assert product.field_confidences["price"] == 100  # clamped
    assert product.field_confidences["brand"] == UNSCORED_FIELD_CONFIDENCE
    assert product.field_confidences["condition"] == 0.0
    assert product.currency == "XOF"
    assert product.field_confidences["currency"] == 30.0
    assert product.confidence_score == 88
    assert product.extraction_metadata.extracted_fields == ["name", "brand", "price"]


def test_normalize_scores_from_fields_without_overall_confidence():
    data = {"products": [{
        "name": "iPhone 11",
        "brand": "Apple",
        "category": "smartphones",
        "condition": "new",
        "price": 180000,
        "currency": "FCFA",
        "quantity": 2,
        "field_confidence": {
            "name": 90, "brand": 90, "category": 90, "condition": 90,
            "price": 90, "currency": 90, "quantity": 90,
        },
    }]}

    [product] = normalize_candidates(data, "gpt-4o-mini", "text", "XOF")

    assert product.currency == "XOF"
    # Grade does not count for new goods
    assert product.confidence_score == 90.0


def test_normalize_drops_unnamed_entries_and_bad_grades():
    data = {"products": [{"name": ""}, {"name": "HP EliteBook", "grade": "Z", "quantity": -2}]}

    products = normalize_candidates(data, "gpt-4o", "image", "XOF")

    assert len(products) == 1
    assert products[0].grade is None
    assert products[0].quantity is None


def test_normalize_rejects_response_without_products():
    with pytest.raises(ExtractionError):
        normalize_candidates({"items": "nope"}, "gpt-4o", "image", "XOF")


async def test_text_without_api_key_uses_rules():
    service = build_service()

    result = await service.extract(ContentType.TEXT, "Samsung Galaxy A52 neuf 120 000 FCFA")

    assert result.ai_model == "rule-based"
    assert result.products[0].brand == "Samsung"
    assert result.products[0].extraction_metadata.fallback_used is False


async def test_model_failure_falls_back_to_rules():
    service = build_service()
    service.client = fake_client(error=RuntimeError("rate limited"))

    result = await service.extract(ContentType.TEXT, "Samsung Galaxy A52 neuf 120 000 FCFA")

    assert result.products[0].extraction_metadata.fallback_used is True
    assert result.products[0].confidence_score <= 80


async def test_model_failure_without_fallback_raises():
    service = build_service(fallback_to_rules=False)
    service.client = fake_client(error=RuntimeError("rate limited"))

    with pytest.raises(ExtractionError):
        await service.extract(ContentType.TEXT, "Samsung Galaxy A52 neuf 120 000 FCFA")


async def test_text_extraction_with_model():
    service = build_service()
    service.client = fake_client(payload={"products": [
        {"name": "iPhone 13", "brand": "Apple", "price": 400000, "currency": "XOF", "confidence": 92},
        {"name": "AirPods Pro", "brand": "Apple", "price": 90000, "currency": "XOF", "confidence": 81},
    ]})

    result = await service.extract(ContentType.TEXT, "iPhone 13 400k, AirPods Pro 90k")

    assert result.ai_model == "gpt-4o-mini"
    assert [p.name for p in result.products] == ["iPhone 13", "AirPods Pro"]
    assert [p.confidence_score for p in result.products] == [92, 81]
    request = service.client.chat.completions.requests[0]
    assert request["response_format"] == {"type": "json_object"}


async def test_voice_note_is_transcribed_then_extracted():
    service = build_service()
    service.client = fake_client(
        payload={"products": [{"name": "Galaxy S21", "brand": "Samsung", "price": 250000, "confidence": 75}]},
        transcript="J'ai un Galaxy S21 à 250 000 francs",
    )
    media = MediaPayload(content=b"OggS...", mime_type="audio/ogg", filename="note.ogg")

    result = await service.extract(ContentType.VOICE, "", media)

    assert result.transcript == "J'ai un Galaxy S21 à 250 000 francs"
    assert result.products[0].extraction_metadata.source_type == "voice"


async def test_image_without_model_fails():
    service = build_service()
    media = MediaPayload(content=b"\x89PNG", mime_type="image/png")

    with pytest.raises(ExtractionError):
        await service.extract(ContentType.IMAGE, "", media)


async def test_image_is_prepared_off_the_event_loop(monkeypatch):
    service = build_service()
    service.client = fake_client(payload={"products": [{"name": "Tecno Spark 10", "price": 65000, "confidence": 70}]})
    buffer = BytesIO()
    Image.new("RGB", (3000, 1500), "white").save(buffer, format="JPEG")
    threads = []
    prepare = service._prepare_image

    def recording_prepare(content):
        threads.append(threading.current_thread())
        return prepare(content)

    monkeypatch.setattr(service, "_prepare_image", recording_prepare)

    result = await service.extract(ContentType.IMAGE, "Tecno Spark", MediaPayload(content=buffer.getvalue()))

    assert threads and threads[0] is not threading.main_thread()
    assert result.ai_model == "gpt-4o"
    request = service.client.chat.completions.requests[0]
    image_url = request["messages"][1]["content"][1]["image_url"]["url"]
    assert image_url.startswith("data:image/png;base64,")


async def test_unreadable_image_fails_extraction():
    service = build_service()
    service.client = fake_client(payload={"products": []})

    with pytest.raises(ExtractionError):
        await service.extract(ContentType.IMAGE, "", MediaPayload(content=b"not an image"))


async def test_rule_extractor_rejects_empty_content():
    with pytest.raises(ExtractionError):
        await RuleBasedExtractor().extract(ContentType.IMAGE, "")

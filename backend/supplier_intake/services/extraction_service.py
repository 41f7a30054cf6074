"""
AI extraction of supplier products.

Text goes to an OpenAI chat model in JSON mode, images and PDFs to a vision
model (PDF pages rasterised first), voice notes are transcribed and then
treated as text. Text falls back to the rule-based extractor when the model
is not configured or fails.
"""
import asyncio
import base64
import json
import logging
import time
from io import BytesIO
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from pdf2image import convert_from_bytes
from PIL import Image

from supplier_intake.enums import ContentType
from supplier_intake.errors import ExtractionError, PipelineError
from supplier_intake.schemas.extraction import (
    ExtractionMetadata,
    ExtractionResult,
    MediaPayload,
    ProductCandidate,
    STRUCTURED_FIELDS,
)
from supplier_intake.utils.extraction_rules import (
    DEFAULTED_CONFIDENCE,
    RULE_BASED_MODEL,
    extract_products_from_text,
    normalize_currency,
    parse_amount,
    score_fields,
)

logger = logging.getLogger(__name__)

# Confidence given to a field the model filled without scoring it
UNSCORED_FIELD_CONFIDENCE = 60.0
MAX_IMAGE_SIDE = 2048
MAX_PDF_PAGES = 3

EXTRACTION_PROMPT = """You extract product listings from messages sent by suppliers of an online marketplace in West Africa.
Messages may be in English or French and may list several products.

Return a JSON object of the form:
{
  "products": [
    {
      "name": "descriptive product name",
      "brand": "manufacturer or null",
      "category": "smartphones, laptops, tablets, televisions, audio, gaming, appliances, cameras or general",
      "condition": "new, used, refurbished or like_new, or null",
      "grade": "A, B, C or D for used/refurbished goods, else null",
      "price": number or null,
      "currency": "ISO 4217 code (FCFA and CFA are XOF) or null",
      "quantity": integer or null,
      "specifications": {"storage": "128GB", "ram": "8GB", "color": "black"},
      "field_confidence": {"name": 0-100, "brand": 0-100, "category": 0-100, "condition": 0-100,
                           "grade": 0-100, "price": 0-100, "currency": 0-100, "quantity": 0-100},
      "confidence": 0-100
    }
  ]
}

Rules:
- One entry per distinct product offered.
- Never invent values: use null and a low field confidence when a value is not stated.
- "confidence" is your overall certainty that the entry is a correct, complete listing.
- Return {"products": []} when the message offers no product."""


class Extractor:
    """Interface of the AI extraction service"""

    async def extract(
        self,
        content_type: ContentType,
        content: str,
        media: Optional[MediaPayload] = None,
    ) -> ExtractionResult:
        raise NotImplementedError


class RuleBasedExtractor(Extractor):
    """Regex extraction; text and already-transcribed voice only"""

    def __init__(self, default_currency: str = "XOF"):
        self.default_currency = default_currency

    async def extract(self, content_type, content, media=None) -> ExtractionResult:
        if not content or not content.strip():
            raise ExtractionError(f"Rule-based extraction needs text; {content_type.value} submission has none")
        started = time.monotonic()
        products = extract_products_from_text(content, self.default_currency)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        for product in products:
            product.extraction_metadata.processing_time_ms = elapsed_ms
            product.extraction_metadata.source_type = content_type.value
        return ExtractionResult(products=products, ai_model=RULE_BASED_MODEL)


def _clamp(value: Any) -> Optional[float]:
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        return None


def _to_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    return parse_amount(str(value))


def _to_quantity(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        quantity = int(float(value))
    except (TypeError, ValueError):
        return None
    return quantity if quantity > 0 else None


def normalize_candidates(
    data: Dict[str, Any],
    ai_model: str,
    source_type: str,
    default_currency: str,
    processing_time_ms: int = 0,
) -> List[ProductCandidate]:
    """
    Turn a model response into candidates, completing every field confidence.

    Missing field confidences are UNSCORED_FIELD_CONFIDENCE when the field has
    a value and 0 otherwise; a defaulted currency is DEFAULTED_CONFIDENCE. The
    product confidence is the model's overall score, else the field mean.
    """
    raw_products = data.get("products")
    if raw_products is None and data.get("name"):
        raw_products = [data]
    if not isinstance(raw_products, list):
        raise ExtractionError("Model response has no products list")

    candidates = []
    for raw in raw_products:
        if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
            continue

        grade = str(raw.get("grade") or "").strip().upper() or None
        if grade not in ("A", "B", "C", "D"):
            grade = None

        values = {
            "name": str(raw["name"]).strip(),
            "brand": raw.get("brand") or None,
            "category": raw.get("category") or None,
            "condition": (raw.get("condition") or None),
            "grade": grade,
            "price": _to_price(raw.get("price")),
            "currency": normalize_currency(raw.get("currency")),
            "quantity": _to_quantity(raw.get("quantity")),
        }

        scored = raw.get("field_confidence") or {}
        field_confidences = {}
        for field in STRUCTURED_FIELDS:
            confidence = _clamp(scored.get(field)) if isinstance(scored, dict) else None
            if values[field] is None:
                confidence = 0.0
            elif confidence is None:
                confidence = UNSCORED_FIELD_CONFIDENCE
            field_confidences[field] = confidence

        extracted_fields = [f for f in STRUCTURED_FIELDS if values[f] is not None]
        if values["currency"] is None:
            values["currency"] = default_currency
            field_confidences["currency"] = DEFAULTED_CONFIDENCE

        overall = _clamp(raw.get("confidence"))
        if overall is None:
            overall = score_fields(field_confidences, values["condition"])

        specifications = raw.get("specifications") or {}
        if not isinstance(specifications, dict):
            specifications = {}

        candidates.append(ProductCandidate(
            **values,
            specifications={str(k): str(v) for k, v in specifications.items() if v is not None},
            confidence_score=round(overall, 2),
            field_confidences=field_confidences,
            extraction_metadata=ExtractionMetadata(
                ai_model=ai_model,
                processing_time_ms=processing_time_ms,
                extracted_fields=extracted_fields,
                source_type=source_type,
            ),
        ))
    return candidates


class OpenAIExtractionService(Extractor):
    """OpenAI-backed extractor with rule-based fallback for text"""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        vision_model: str,
        transcription_model: str,
        timeout: float = 60,
        fallback_to_rules: bool = True,
        default_currency: str = "XOF",
    ):
        self.model = model
        self.vision_model = vision_model
        self.transcription_model = transcription_model
        self.fallback_to_rules = fallback_to_rules
        self.default_currency = default_currency
        self.rules = RuleBasedExtractor(default_currency)

        if api_key:
            self.client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        else:
            logger.warning("OPENAI_API_KEY not set. Only rule-based text extraction is available.")
            self.client = None

    async def extract(self, content_type, content, media=None) -> ExtractionResult:
        if content_type == ContentType.TEXT:
            return await self._extract_text(content, ContentType.TEXT)

        if content_type == ContentType.VOICE:
            transcript = content
            if media is not None:
                transcript = await self._transcribe(media)
            result = await self._extract_text(transcript, ContentType.VOICE)
            result.transcript = transcript
            return result

        if media is None:
            raise ExtractionError(f"{content_type.value} submission has no media to extract from")
        if not self.client:
            raise ExtractionError(f"No vision model configured for {content_type.value} extraction")

        if content_type == ContentType.PDF:
            images = await asyncio.to_thread(self._pdf_to_images, media.content)
        else:
            images = [await asyncio.to_thread(self._prepare_image, media.content)]
        return await self._extract_images(images, caption=content, source_type=content_type.value)

    async def _extract_text(self, text: str, source: ContentType) -> ExtractionResult:
        if not text or not text.strip():
            raise ExtractionError("Submission has no text to extract from")

        if not self.client:
            if self.fallback_to_rules:
                return await self._rules(text, source)
            raise ExtractionError("No language model configured and rule fallback disabled")

        started = time.monotonic()
        try:
            data = await self._complete(self.model, [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {"role": "user", "content": text},
            ])
            products = normalize_candidates(
                data,
                ai_model=self.model,
                source_type=source.value,
                default_currency=self.default_currency,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception as e:
            if not self.fallback_to_rules:
                if isinstance(e, PipelineError):
                    raise
                raise ExtractionError(f"Model extraction failed: {str(e)}")
            logger.warning(f"Model extraction failed, falling back to rules: {str(e)}")
            return await self._rules(text, source)

        return ExtractionResult(products=products, ai_model=self.model)

    async def _rules(self, text: str, source: ContentType) -> ExtractionResult:
        result = await self.rules.extract(source, text)
        for product in result.products:
            product.extraction_metadata.fallback_used = self.client is not None
        return result

    async def _complete(self, model: str, messages: list) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.1,
            response_format={"type": "json_object"},
        )
        if not response.choices or not response.choices[0].message:
            raise ExtractionError("Model response has no choices")
        content = response.choices[0].message.content
        if not content:
            raise ExtractionError("Model response is empty")
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Model returned invalid JSON: {str(e)}")

    async def _extract_images(self, images: List[bytes], caption: str, source_type: str) -> ExtractionResult:
        content: List[Dict[str, Any]] = [{
            "type": "text",
            "text": f"Supplier caption: {caption}" if caption else "The supplier sent no caption.",
        }]
        for image in images:
            encoded = base64.b64encode(image).decode("utf-8")
            content.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}})

        started = time.monotonic()
        try:
            data = await self._complete(self.vision_model, [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {"role": "user", "content": content},
            ])
        except PipelineError:
            raise
        except Exception as e:
            raise ExtractionError(f"Vision extraction failed: {str(e)}")

        products = normalize_candidates(
            data,
            ai_model=self.vision_model,
            source_type=source_type,
            default_currency=self.default_currency,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        return ExtractionResult(products=products, ai_model=self.vision_model)

    async def _transcribe(self, media: MediaPayload) -> str:
        if not self.client:
            raise ExtractionError("No transcription model configured for voice notes")
        filename = media.filename or "voice.ogg"
        try:
            transcription = await self.client.audio.transcriptions.create(
                model=self.transcription_model,
                file=(filename, media.content, media.mime_type or "audio/ogg"),
            )
        except Exception as e:
            raise ExtractionError(f"Voice transcription failed: {str(e)}")
        logger.info(f"Transcribed voice note ({len(transcription.text)} characters)")
        return transcription.text

    def _prepare_image(self, content: bytes) -> bytes:
        """Normalise to PNG and bound the longest side; blocking, run off the event loop"""
        try:
            img = Image.open(BytesIO(content))
            img = img.convert("RGB")
        except Exception as e:
            raise ExtractionError(f"Unreadable image: {str(e)}")
        img.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def _pdf_to_images(self, content: bytes) -> List[bytes]:
        try:
            pages = convert_from_bytes(content, first_page=1, last_page=MAX_PDF_PAGES, dpi=150)
        except Exception as e:
            raise ExtractionError(f"PDF conversion failed: {str(e)}")
        if not pages:
            raise ExtractionError("No pages found in PDF")

        images = []
        for page in pages:
            page.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
            buffer = BytesIO()
            page.save(buffer, format="PNG")
            images.append(buffer.getvalue())
        logger.info(f"Converted PDF to {len(images)} page image(s)")
        return images

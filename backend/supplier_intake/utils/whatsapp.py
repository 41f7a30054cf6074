"""
WhatsApp Business webhook helpers: signature check and payload parsing.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import List, Optional

from supplier_intake.errors import InvalidSignature, MalformedPayload
from supplier_intake.schemas.webhook import InboundMessage

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> None:
    """Check X-Hub-Signature-256 (HMAC-SHA256 of the raw body)"""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        raise InvalidSignature("Missing or malformed X-Hub-Signature-256 header")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header[len(SIGNATURE_PREFIX):]):
        raise InvalidSignature("Webhook signature does not match")


def sign(body: bytes, secret: str) -> str:
    return SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_message(raw: dict) -> InboundMessage:
    """Normalise one entry of value.messages[]"""
    message_id = raw.get("id")
    sender = raw.get("from")
    message_type = raw.get("type")
    if not message_id or not sender or not message_type:
        raise MalformedPayload("Message is missing id, from or type")

    text = None
    media_id = None
    mime_type = None
    filename = None

    if message_type == "text":
        text = (raw.get("text") or {}).get("body")
    elif message_type in ("image", "document", "audio", "voice", "video", "sticker"):
        media = raw.get(message_type) or {}
        media_id = media.get("id")
        mime_type = media.get("mime_type")
        filename = media.get("filename")
        text = media.get("caption")

    return InboundMessage(
        source_message_id=message_id,
        sender=sender,
        message_type=message_type,
        text=text,
        media_id=media_id,
        mime_type=mime_type,
        filename=filename,
        timestamp=_parse_timestamp(raw.get("timestamp")),
    )


def parse_webhook_payload(payload: dict) -> List[dict]:
    """
    Collect the raw messages of a webhook delivery.

    Status callbacks (sent/delivered/read) carry no messages and yield nothing.
    """
    if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
        raise MalformedPayload("Not a WhatsApp Business Account webhook payload")

    entries = payload.get("entry")
    if not isinstance(entries, list):
        raise MalformedPayload("Webhook payload has no entry list")

    messages = []
    for entry in entries:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            for message in value.get("messages") or []:
                messages.append(message)
    return messages

from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID


class InboundMessage(BaseModel):
    """One supplier message, normalised from the WhatsApp payload"""
    source_message_id: str
    sender: str  # Phone number in international format, no '+'
    message_type: str  # WhatsApp type: 'text', 'image', 'document', 'audio', 'voice', ...
    text: Optional[str] = None  # Body, or caption for media messages
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    timestamp: Optional[datetime] = None


class IngestResult(BaseModel):
    source_message_id: str
    submission_id: Optional[UUID] = None
    status: str  # 'accepted', 'duplicate', 'rejected'
    duplicate: bool = False
    error: Optional[str] = None
    code: Optional[str] = None


class WebhookResponse(BaseModel):
    received: int
    accepted: int
    results: List[IngestResult] = []

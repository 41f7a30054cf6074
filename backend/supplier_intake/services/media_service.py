"""
WhatsApp Cloud API media download.

Media arrives in the webhook as an id; the file itself is fetched in two
steps: resolve the id to a short-lived URL, then download that URL.
"""
import logging
from typing import Optional, Tuple
import httpx

from supplier_intake.errors import CollaboratorError

logger = logging.getLogger(__name__)


class WhatsAppMediaClient:
    def __init__(self, access_token: Optional[str], base_url: str, timeout: float = 15.0):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch(self, media_id: str) -> Tuple[bytes, Optional[str]]:
        """
        Download one media object.

        Returns:
            (content, mime_type)
        """
        if not self.access_token:
            raise CollaboratorError("WhatsApp access token not configured; cannot download media")

        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                meta = await client.get(f"{self.base_url}/{media_id}", headers=headers)
                meta.raise_for_status()
                info = meta.json()
                url = info.get("url")
                if not url:
                    raise CollaboratorError(f"WhatsApp returned no download URL for media {media_id}")

                resp = await client.get(url, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Media download failed for {media_id}: {str(e)}")
            raise CollaboratorError(f"Media download failed for {media_id}: {str(e)}")

        logger.info(f"Downloaded media {media_id} ({len(resp.content)} bytes)")
        return resp.content, info.get("mime_type") or resp.headers.get("content-type")

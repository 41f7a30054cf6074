"""
Supplier directory lookup.

The pipeline never creates suppliers; it resolves the sender phone to a
supplier record and snapshots name/phone onto the submission.
"""
import logging
from typing import Optional
import httpx
from pydantic import BaseModel

from supplier_intake.errors import CollaboratorError, UnknownSupplier

logger = logging.getLogger(__name__)


class SupplierRecord(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    active: bool = True


class SupplierDirectory:
    """HTTP client for the supplier directory; the sender phone is the identity when no URL is set"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout

    async def get_supplier(self, phone_or_id: str) -> SupplierRecord:
        if not self.base_url:
            return SupplierRecord(id=phone_or_id, phone=phone_or_id)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(
                    f"{self.base_url}/suppliers/lookup",
                    params={"phone": phone_or_id},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Supplier directory unavailable: {str(e)}")

        if resp.status_code == 404:
            raise UnknownSupplier(f"No supplier registered for {phone_or_id}")
        if resp.status_code >= 400:
            raise CollaboratorError(f"Supplier directory returned {resp.status_code}")

        record = SupplierRecord(**resp.json())
        if not record.active:
            raise UnknownSupplier(f"Supplier {record.id} is not active")
        return record

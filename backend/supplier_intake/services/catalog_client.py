import logging
from typing import Optional
import httpx

from supplier_intake.errors import CollaboratorError

logger = logging.getLogger(__name__)


class CatalogClient:
    """Product catalog service; only create-or-update is used"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout

    async def create_or_update_product(self, payload: dict) -> str:
        """
        Push an approved product.

        Returns:
            Catalog product id
        """
        if not self.base_url:
            raise CollaboratorError("Catalog service not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/products", json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Catalog update failed: {str(e)}")

        product_id = resp.json().get("id")
        if not product_id:
            raise CollaboratorError("Catalog response carried no product id")
        return str(product_id)

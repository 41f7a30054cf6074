"""
Inventory Service - pushes approved products to the catalog.

Called exactly once per approval. A catalog failure never undoes the
approval; it becomes an inventory_update operation for the Recovery Manager.
"""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from supplier_intake.enums import OperationType
from supplier_intake.errors import NotFound
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.failed_operation import FailedOperation
from supplier_intake.services.catalog_client import CatalogClient
from supplier_intake.services.recovery_service import RecoveryService

logger = logging.getLogger(__name__)


def build_catalog_payload(product: ExtractedProduct) -> dict:
    submission = product.submission
    return {
        "name": product.name,
        "brand": product.brand,
        "category": product.category,
        "condition": product.condition,
        "grade": product.grade,
        "price": float(product.price) if product.price is not None else None,
        "currency": product.currency,
        "quantity": product.quantity,
        "specifications": product.specifications or {},
        "supplier_id": submission.supplier_id if submission else None,
        "source_submission_id": str(product.submission_id),
        "source_product_id": str(product.id),
    }


class InventoryService:
    def __init__(self, catalog: CatalogClient, recovery: RecoveryService):
        self.catalog = catalog
        self.recovery = recovery

    async def push_product(self, db: Session, product: ExtractedProduct, enqueue_on_failure: bool = True) -> Optional[str]:
        """
        Create or update the catalog entry for an approved product.

        Returns:
            Catalog product id, or None when the push failed and was queued for recovery
        """
        try:
            catalog_id = await self.catalog.create_or_update_product(build_catalog_payload(product))
        except Exception as e:
            if not enqueue_on_failure:
                raise
            logger.error(f"Inventory update failed for product {product.id}: {str(e)}")
            self.recovery.enqueue(
                db,
                OperationType.INVENTORY_UPDATE,
                product.submission_id,
                str(e),
                extracted_product_id=product.id,
                metadata={"extracted_product_id": str(product.id)},
            )
            return None

        product.catalog_product_id = catalog_id
        db.commit()
        logger.info(f"Product {product.id} pushed to catalog as {catalog_id}")
        return catalog_id

    async def retry_operation(self, db: Session, operation: FailedOperation) -> None:
        """Recovery handler for inventory_update; raises when the catalog still fails"""
        product = db.query(ExtractedProduct).filter(
            ExtractedProduct.id == operation.extracted_product_id
        ).first()
        if not product:
            raise NotFound(f"Extracted product {operation.extracted_product_id} no longer exists")
        if product.catalog_product_id:
            logger.info(f"Product {product.id} already in catalog as {product.catalog_product_id}")
            return
        await self.push_product(db, product, enqueue_on_failure=False)

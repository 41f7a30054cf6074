from supplier_intake.models.submission import Submission
from supplier_intake.models.extracted_product import ExtractedProduct
from supplier_intake.models.validation_item import ValidationItem
from supplier_intake.models.failed_operation import FailedOperation

__all__ = ["Submission", "ExtractedProduct", "ValidationItem", "FailedOperation"]

"""
Pipeline error taxonomy.

Permanent errors fail fast at the gateway, business-rule errors are rejected
synchronously without mutating state, transient errors are routed to the
Recovery Manager.
"""
from typing import Optional


class PipelineError(Exception):
    code = "PIPELINE_ERROR"
    error_class = "internal"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


# Permanent / non-retryable

class UnsupportedContentType(PipelineError):
    code = "UNSUPPORTED_CONTENT_TYPE"
    error_class = "permanent"
    http_status = 415


class DuplicateSubmission(PipelineError):
    code = "DUPLICATE_SUBMISSION"
    error_class = "permanent"
    http_status = 409

    def __init__(self, source_message_id: str, existing_id) -> None:
        super().__init__(f"Message {source_message_id} already ingested as submission {existing_id}")
        self.source_message_id = source_message_id
        self.existing_id = existing_id


class MalformedPayload(PipelineError):
    code = "MALFORMED_PAYLOAD"
    error_class = "permanent"
    http_status = 400


class UnknownSupplier(PipelineError):
    code = "UNKNOWN_SUPPLIER"
    error_class = "permanent"
    http_status = 403


class InvalidSignature(PipelineError):
    code = "INVALID_SIGNATURE"
    error_class = "permanent"
    http_status = 401


# Validation / business rule

class NotFound(PipelineError):
    code = "NOT_FOUND"
    error_class = "business_rule"
    http_status = 404


class InvalidStateTransition(PipelineError):
    code = "INVALID_STATE_TRANSITION"
    error_class = "business_rule"
    http_status = 409


class ConcurrentModification(PipelineError):
    code = "CONCURRENT_MODIFICATION"
    error_class = "business_rule"
    http_status = 409


class BusinessRuleViolation(PipelineError):
    code = "BUSINESS_RULE_VIOLATION"
    error_class = "business_rule"
    http_status = 422


# Transient / retryable

class ExtractionError(PipelineError):
    code = "EXTRACTION_FAILED"
    error_class = "transient"
    http_status = 502
    retryable = True


class ExtractionTimeout(ExtractionError):
    code = "EXTRACTION_TIMEOUT"
    http_status = 504


class CollaboratorError(PipelineError):
    code = "COLLABORATOR_UNAVAILABLE"
    error_class = "transient"
    http_status = 502
    retryable = True

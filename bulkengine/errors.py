"""
Error Taxonomy

Typed errors raised by the engine. Callers receive either a typed
result or one of these.
"""

from typing import Any, Dict, List, Optional


class BulkEngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class NotFoundError(BulkEngineError):
    """A domain, benchmark or order ID does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class ConstraintViolation(BulkEngineError):
    """Uniqueness violation on a domain record insert."""


class ValidationError(BulkEngineError):
    """Malformed input, rejected before any write."""


class PartialBatchFailure(BulkEngineError):
    """
    One or more records of a bulk operation failed.

    Raised only when a caller asks for strict behavior; batch results
    normally embed the same information instead.
    """

    def __init__(self, operation: str, failures: List[Dict[str, Any]], succeeded: int = 0):
        super().__init__(
            f"{operation}: {len(failures)} failed, {succeeded} succeeded",
            {"operation": operation},
        )
        self.operation = operation
        self.failures = failures
        self.succeeded = succeeded

    @property
    def failed_count(self) -> int:
        return len(self.failures)

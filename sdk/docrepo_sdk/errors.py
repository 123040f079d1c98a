"""
Error types for the docrepo SDK.

This module defines all exception types raised by the SDK:
- DocRepoError: Base exception
- NotFoundError: No document at the given id/partition
- TypeMismatchError: Stored document type differs from the caller's type
- ProvisioningError: Database, collection or throughput operation failed
- ConsistencyError: More documents found than the operation allows
- AggregateOperationError: Bulk operation finished with failed items
- ValidationError: Invalid argument or setting
- StoreError / ConflictError / StoreConnectionError: Store-level failures

Invariants:
    - All errors inherit from DocRepoError
    - Errors include context for debugging
    - Aggregate errors keep every per-item cause
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .bulk import BulkItemOutcome, BulkResult


class DocRepoError(Exception):
    """Base exception for all docrepo SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCREPO_ERROR"
        self.details = details or {}


class ValidationError(DocRepoError):
    """Argument or configuration validation failed.

    Raised when:
    - Entity id is empty or whitespace
    - Throughput value is not a positive integer
    - Settings are missing or malformed
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class StoreError(DocRepoError):
    """The remote store rejected or failed an operation.

    Attributes:
        status_code: HTTP-style status reported by the store, if any
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: str = "STORE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"status_code": status_code}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.status_code = status_code


class StoreConnectionError(StoreError):
    """Failed to reach the store.

    Raised when:
    - An operation is issued before connect()
    - The endpoint is unreachable
    """

    def __init__(self, message: str, endpoint: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"endpoint": endpoint},
        )
        self.endpoint = endpoint


class ConflictError(StoreError):
    """A document with the same id already exists."""

    def __init__(self, message: str, resource_id: str) -> None:
        super().__init__(
            message,
            status_code=409,
            code="CONFLICT",
            details={"resource_id": resource_id},
        )
        self.resource_id = resource_id


class NotFoundError(StoreError):
    """Resource not found.

    Raised when:
    - No document exists at the id (and partition key)
    - The database or collection does not exist
    - A stored procedure is not registered
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
        partition_key: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            status_code=404,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "partition_key": partition_key,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.partition_key = partition_key


class TypeMismatchError(DocRepoError):
    """The stored document type differs from the type of the write.

    A document's type is fixed by its first write; later writes for the
    same id must use the same type.
    """

    def __init__(
        self,
        document_id: str,
        stored_type: str,
        requested_type: str,
    ) -> None:
        super().__init__(
            f"Cannot change {document_id} from {stored_type} to {requested_type}",
            code="TYPE_MISMATCH",
            details={
                "document_id": document_id,
                "stored_type": stored_type,
                "requested_type": requested_type,
            },
        )
        self.document_id = document_id
        self.stored_type = stored_type
        self.requested_type = requested_type


class ProvisioningError(DocRepoError):
    """Database, collection or throughput provisioning failed.

    Raised when:
    - The store rejects database or collection creation
    - No throughput offer exists for the collection
    """

    def __init__(
        self,
        message: str,
        database: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="PROVISIONING_ERROR",
            details={"database": database, "collection": collection},
        )
        self.database = database
        self.collection = collection


class ConsistencyError(DocRepoError):
    """More documents were found than the operation allows."""

    def __init__(self, message: str, document_id: str, found: int) -> None:
        super().__init__(
            message,
            code="CONSISTENCY_ERROR",
            details={"document_id": document_id, "found": found},
        )
        self.document_id = document_id
        self.found = found


class OperationCancelledError(DocRepoError):
    """A bulk item was not started because the operation was cancelled."""

    def __init__(self, item_id: Optional[str] = None) -> None:
        super().__init__(
            f"Bulk item {item_id!r} not started: operation cancelled",
            code="CANCELLED",
            details={"item_id": item_id},
        )
        self.item_id = item_id


class AggregateOperationError(DocRepoError):
    """A bulk operation completed with one or more failed items.

    Attributes:
        result: The full bulk result (every item's terminal outcome)
        failures: Outcomes of the failed items, in submission order
    """

    def __init__(self, operation: str, result: BulkResult) -> None:
        failures = result.failed
        super().__init__(
            f"Bulk {operation} failed for {len(failures)} of {result.total} items",
            code="AGGREGATE_ERROR",
            details={
                "operation": operation,
                "total": result.total,
                "failed": [
                    {"index": f.index, "item_id": f.item_id, "error": str(f.error)}
                    for f in failures
                ],
            },
        )
        self.operation = operation
        self.result = result
        self.failures: List[BulkItemOutcome] = failures

    @property
    def exceptions(self) -> List[BaseException]:
        """The individual causes, one per failed item."""
        return [f.error for f in self.failures if f.error is not None]

    @property
    def failed_ids(self) -> List[Optional[str]]:
        """Ids of the failed items, for selective retry."""
        return [f.item_id for f in self.failures]

from __future__ import annotations

from typing import Any


class MasterDataError(Exception):
    """Base error for the customer aggregate store."""

    code = "MASTERDATA_ERROR"


class NotFoundError(MasterDataError):
    """Requested resource does not exist."""

    code = "NOT_FOUND"


class AggregateNotFoundError(NotFoundError):
    """No events exist for the aggregate id within the tenant."""

    code = "AGGREGATE_NOT_FOUND"

    def __init__(self, tenant_id: str, aggregate_id: str) -> None:
        super().__init__(f"aggregate {aggregate_id} not found for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.aggregate_id = aggregate_id


class TenantNotFoundError(NotFoundError):
    """Tenant id is not registered."""

    code = "TENANT_NOT_FOUND"

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class TenantAlreadyExistsError(MasterDataError):
    """Tenant id is already registered."""

    code = "TENANT_ALREADY_EXISTS"


class TenantUnavailableError(MasterDataError):
    """Tenant is suspended or deleted; downstream work must not start."""

    code = "TENANT_UNAVAILABLE"

    def __init__(self, tenant_id: str, status: str) -> None:
        super().__init__(f"tenant {tenant_id} is {status}")
        self.tenant_id = tenant_id
        self.status = status


class ConflictError(MasterDataError):
    """Optimistic concurrency lost; reload and retry."""

    code = "CONFLICT"

    def __init__(self, aggregate_id: str, *, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"aggregate {aggregate_id} expected version {expected_version} but found {actual_version}"
        )
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransitionError(MasterDataError):
    """Lifecycle transition is not defined by the state machine."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_stage: str, to_stage: str, reason: str | None = None) -> None:
        message = f"transition {from_stage} -> {to_stage} is not allowed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason


class CustomerValidationError(MasterDataError):
    """Command violates a field constraint or business rule."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class DuplicateCustomerNumberError(CustomerValidationError):
    """Customer number already claimed within the tenant."""

    code = "DUPLICATE_CUSTOMER_NUMBER"


class AccessDeniedError(MasterDataError):
    """Authorization failed; the decision has already been audited."""

    code = "ACCESS_DENIED"

    def __init__(self, message: str, *, decision: Any | None = None) -> None:
        super().__init__(message)
        self.decision = decision


class RoleNotFoundError(NotFoundError):
    """Role id is not visible to the tenant."""

    code = "ROLE_NOT_FOUND"


class RoleAlreadyExistsError(MasterDataError):
    """Role name is already taken within the tenant."""

    code = "ROLE_ALREADY_EXISTS"


class PolicyValidationError(MasterDataError):
    """Permission restriction or condition is malformed or too complex."""

    code = "AUTHZ_POLICY_INVALID"


class RoleHierarchyCycleError(MasterDataError):
    """Adding the role edge would introduce a cycle."""

    code = "ROLE_HIERARCHY_CYCLE"


class RoleHierarchyConflictError(MasterDataError):
    """Role hierarchy changed concurrently; re-validate and retry."""

    code = "ROLE_HIERARCHY_CONFLICT"


class FieldCryptoError(MasterDataError):
    """Field-scoped crypto failure."""

    code = "FIELD_CRYPTO_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class FieldIntegrityError(FieldCryptoError):
    """Envelope hash or authentication tag does not match the supplied context."""

    code = "FIELD_INTEGRITY_ERROR"


class KeyUnavailableError(FieldCryptoError):
    """Referenced key cannot be resolved or has been revoked."""

    code = "KEY_UNAVAILABLE"


class StorageUnavailableError(MasterDataError):
    """Durable storage failed; surfaced without retry."""

    code = "STORAGE_UNAVAILABLE"


class EventStreamCorruptError(StorageUnavailableError):
    """Event stream contains a sequence gap or duplicate."""

    code = "EVENT_STREAM_CORRUPT"


class AuditSinkUnavailableError(StorageUnavailableError):
    """Audit entry could not be written to the durable sink."""

    code = "AUDIT_SINK_UNAVAILABLE"

    def __init__(self, message: str, *, buffered: bool = False) -> None:
        super().__init__(message)
        self.buffered = buffered


class AuditBufferFullError(AuditSinkUnavailableError):
    """Local audit buffer is full; the entry was not accepted."""

    code = "AUDIT_BUFFER_FULL"


class SchemaVersionMismatchError(MasterDataError):
    """Database schema version differs from the one this code was built for."""

    code = "SCHEMA_VERSION_MISMATCH"


_HTTP_STATUS: list[tuple[type[MasterDataError], int]] = [
    (AccessDeniedError, 403),
    (TenantUnavailableError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TenantAlreadyExistsError, 409),
    (RoleHierarchyConflictError, 409),
    (RoleAlreadyExistsError, 409),
    (InvalidTransitionError, 422),
    (CustomerValidationError, 422),
    (RoleHierarchyCycleError, 422),
    (PolicyValidationError, 422),
    (FieldCryptoError, 500),
    (StorageUnavailableError, 503),
    (SchemaVersionMismatchError, 503),
]


def http_status_for(exc: BaseException) -> int:
    # Map domain errors to transport status codes for the API layer.
    for error_type, status_code in _HTTP_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500

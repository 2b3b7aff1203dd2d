"""
Gateway exception hierarchy.

Every failure the gateway raises on purpose derives from GatewayError so
that the HTTP layer can map it to a response without inspecting messages.

Taxonomy:
- ClientInputError: the caller asked for something the policy or the
  payload shape does not allow. Never retried, always surfaced with the
  offending identifier.
- ValidationFailedError: schema mismatch, carries a list of field errors.
- NotFoundError: the referenced row does not exist.
- StoreError: anything raised by the store. Transient subclasses are
  eligible for retry inside TransactionRunner, everything else is fatal
  and surfaced as an opaque failure.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    """Base exception for the gateway."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ========================
# Client input errors (4xx)
# ========================

class ClientInputError(GatewayError):
    """Raised when caller input is rejected before any store access."""

    kind = "client_input_error"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class InvalidJSONParameterError(ClientInputError):
    """Raised when a JSON-shaped query parameter cannot be decoded."""

    kind = "invalid_json_parameter"

    def __init__(self, parameter: str):
        super().__init__(f"Invalid JSON {parameter} parameter")
        self.parameter = parameter


class DisallowedFieldError(ClientInputError):
    """Raised when a field name is not in the policy allow-list."""

    kind = "disallowed_field"

    def __init__(self, operation: str, field: str):
        super().__init__(f"{operation} by '{field}' is not allowed")
        self.operation = operation
        self.field = field


class IncludeDepthExceededError(ClientInputError):
    kind = "include_depth_exceeded"

    def __init__(self, max_depth: int):
        super().__init__(
            f"Include depth exceeds maximum allowed ({max_depth})"
        )
        self.max_depth = max_depth


class NestedDepthExceededError(ClientInputError):
    kind = "nested_depth_exceeded"

    def __init__(self, field: str, max_depth: int):
        super().__init__(
            f"Nested write on '{field}' exceeds maximum nesting depth ({max_depth})"
        )
        self.field = field
        self.max_depth = max_depth


class LimitExceededError(ClientInputError):
    kind = "limit_exceeded"

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Requested page size {requested} exceeds maximum allowed ({maximum})"
        )
        self.requested = requested
        self.maximum = maximum


class MalformedPayloadError(ClientInputError):
    """Raised when a request body does not have the expected shape."""

    kind = "malformed_payload"


class UnsupportedOperationError(ClientInputError):
    """Raised when an entity does not support the requested operation."""

    kind = "unsupported_operation"


class RawQueryRejectedError(ClientInputError):
    """Raised when a raw query violates the entity's whitelist."""

    kind = "raw_query_rejected"


# ========================
# Validation errors
# ========================

@dataclass(frozen=True)
class FieldError:
    """
    A single field-level validation failure.

    Attributes:
        field_path: Dotted path of the offending field (e.g. "reviews.0.rating")
        message: Human readable explanation
        code: Machine readable error code from the validator
    """
    field_path: str
    message: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class ValidationFailedError(GatewayError):
    """Raised when a payload does not match the entity's validation schema."""

    kind = "validation_failed"

    def __init__(self, errors: List[FieldError]):
        super().__init__("Validation failed")
        self.errors = errors

    def to_list(self) -> List[Dict[str, str]]:
        return [error.to_dict() for error in self.errors]


# ========================
# Not found
# ========================

class NotFoundError(GatewayError):
    """Raised when a referenced entity does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, identifier: Any = None, message: Optional[str] = None):
        if message is None:
            message = (
                f"{entity} not found: {identifier}"
                if identifier is not None
                else f"{entity} not found"
            )
        super().__init__(message)
        self.entity = entity
        self.identifier = identifier


# ========================
# Store errors (5xx)
# ========================

class StoreError(GatewayError):
    """
    Base class for failures raised by the store.

    Attributes:
        code: Store error code (SQLSTATE, SQLite error name, ...) if known
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TransientStoreError(StoreError):
    """A store failure whose code is in the retryable set."""


class FatalStoreError(StoreError):
    """A store failure that must not be retried."""


class TransactionTimeoutError(TransientStoreError):
    """Raised when one transaction attempt exceeds its timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Transaction timeout after {timeout_ms}ms", code="TIMEOUT")
        self.timeout_ms = timeout_ms


class QueryExecutionError(StoreError):
    """Opaque failure of a guarded raw query; internals are only logged."""

    def __init__(self, code: Optional[str] = None):
        super().__init__("Database query failed", code=code)

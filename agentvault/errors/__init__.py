"""Error handling framework for AgentVault.

This package provides:
- Error code registry with AV-XXXX format codes
- Typed domain exceptions mapped to HTTP status codes by the API layer

Error categories:
- AV-1xxx: Validation errors
- AV-2xxx: Credential errors
- AV-3xxx: Connection lifecycle errors
- AV-4xxx: Routing errors
- AV-5xxx: Security errors
"""

from agentvault.errors.domain import (
    ConnectionInUse,
    ConnectionNotUsable,
    DecryptionFailed,
    DomainError,
    ExecutionFailed,
    FieldError,
    InvalidStatusTransition,
    MasterSecretMissing,
    MissingRequiredConnection,
    NotFoundError,
    NoUsableConnection,
    ProbeFailed,
    RateLimited,
    UnmetRequirement,
    UnsupportedConnectionType,
    ValidationFailed,
)
from agentvault.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain exceptions
    "DomainError",
    "FieldError",
    "ValidationFailed",
    "UnsupportedConnectionType",
    "NotFoundError",
    "DecryptionFailed",
    "MasterSecretMissing",
    "ConnectionNotUsable",
    "InvalidStatusTransition",
    "ConnectionInUse",
    "ProbeFailed",
    "UnmetRequirement",
    "MissingRequiredConnection",
    "NoUsableConnection",
    "ExecutionFailed",
    "RateLimited",
]

"""Error code registry with AV-XXXX format codes.

This module defines the error code system for AgentVault, organizing errors
into categories:
- AV-1xxx: Validation errors (fields, scopes, connection types)
- AV-2xxx: Credential errors (encryption, decryption, master secret)
- AV-3xxx: Connection lifecycle errors (not usable, probe failures)
- AV-4xxx: Routing errors (missing/unusable connections, execution)
- AV-5xxx: Security errors (rate limits)

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # AV-1xxx
    CREDENTIAL = "credential"  # AV-2xxx
    CONNECTION = "connection"  # AV-3xxx
    ROUTING = "routing"  # AV-4xxx
    SECURITY = "security"  # AV-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in AV-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (AV-1xxx)
    "AV-1001": ErrorCode(
        code="AV-1001",
        category=ErrorCategory.VALIDATION,
        title="Validation Failed",
        message_template="{count} problem(s) found in the submitted connection.",
        remediation="Correct every listed field and submit again.",
    ),
    "AV-1002": ErrorCode(
        code="AV-1002",
        category=ErrorCategory.VALIDATION,
        title="Unsupported Connection Type",
        message_template="Connection type '{type}' is not supported.",
        remediation="Choose one of the types listed by GET /connections/types.",
    ),
    "AV-1003": ErrorCode(
        code="AV-1003",
        category=ErrorCategory.VALIDATION,
        title="Not Found",
        message_template="{resource} '{identifier}' not found.",
        remediation="Check the identifier and that it belongs to your account.",
    ),
    # Credential errors (AV-2xxx)
    "AV-2001": ErrorCode(
        code="AV-2001",
        category=ErrorCategory.CREDENTIAL,
        title="Decryption Failed",
        message_template="Stored credentials could not be decrypted.",
        remediation="Re-enter the connection credentials. If many connections fail, the master secret may have changed.",
    ),
    "AV-2002": ErrorCode(
        code="AV-2002",
        category=ErrorCategory.CREDENTIAL,
        title="Master Secret Missing",
        message_template="No master secret configured for production mode.",
        remediation="Set AGENTVAULT_MASTER_SECRET or AGENTVAULT_MASTER_SECRET_FILE before starting.",
    ),
    # Connection lifecycle errors (AV-3xxx)
    "AV-3001": ErrorCode(
        code="AV-3001",
        category=ErrorCategory.CONNECTION,
        title="Connection Not Usable",
        message_template="Connection '{connection_id}' is {status}.",
        remediation="Pick another connection or re-authorize this one.",
    ),
    "AV-3002": ErrorCode(
        code="AV-3002",
        category=ErrorCategory.CONNECTION,
        title="Connection Test Failed",
        message_template="The provider rejected the credentials: {detail}",
        remediation="Verify the credentials with the provider and try again.",
        is_retryable=True,
    ),
    "AV-3003": ErrorCode(
        code="AV-3003",
        category=ErrorCategory.CONNECTION,
        title="Invalid Status Transition",
        message_template="Connection '{connection_id}' cannot move from {current} to {requested}.",
        remediation="Revoked connections are final. Suspended connections must be reactivated first.",
    ),
    "AV-3004": ErrorCode(
        code="AV-3004",
        category=ErrorCategory.CONNECTION,
        title="Connection In Use",
        message_template="Connection '{connection_id}' is required by agents: {agents}.",
        remediation="Unlink the connection from those agents or mark the links optional first.",
    ),
    # Routing errors (AV-4xxx)
    "AV-4001": ErrorCode(
        code="AV-4001",
        category=ErrorCategory.ROUTING,
        title="Missing Required Connection",
        message_template="Missing required connections: {connections}",
        remediation="Re-authorize or replace every listed connection.",
    ),
    "AV-4002": ErrorCode(
        code="AV-4002",
        category=ErrorCategory.ROUTING,
        title="No Usable Connection",
        message_template="No usable connection for {capability}; accepted types: {accepted}.",
        remediation="Link a connection of one of the accepted types to the agent.",
    ),
    "AV-4003": ErrorCode(
        code="AV-4003",
        category=ErrorCategory.ROUTING,
        title="Execution Failed",
        message_template="Execution failed (reference {reference_id}).",
        remediation="Retry later. Quote the reference id when contacting support.",
        is_retryable=True,
    ),
    # Security errors (AV-5xxx)
    "AV-5001": ErrorCode(
        code="AV-5001",
        category=ErrorCategory.SECURITY,
        title="Rate Limited",
        message_template="Too many '{action}' requests. Try again after {expires_at}.",
        remediation="Wait until the rate limit expires.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Look up an error code in the registry.

    Args:
        code: Error code in AV-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]

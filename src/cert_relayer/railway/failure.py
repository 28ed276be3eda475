"""
Failure description — structured error information for the failure track.

Every error the relayer can produce is an ErrorCode member. The code carries
its own classification (retryable or not, security relevant or not) so that
callers branch on the code, never on message text.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Structured error codes for the failure track.

    Client-side codes describe a request that must be corrected (or re-signed)
    before it can succeed. Server-side codes describe collaborator or
    infrastructure trouble.
    """

    # --- Client-side errors ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Missing or malformed caller input (→ 400)."""

    MALFORMED_SIGNATURE = "MALFORMED_SIGNATURE"
    """Signature length, encoding or scalar range is invalid (→ 400)."""

    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    """Signature recovers to an address other than the claimed issuer (→ 403)."""

    NOT_FOUND = "NOT_FOUND"
    """Account, certificate or journal entry doesn't exist (→ 404)."""

    INSUFFICIENT_RESOURCE_ERROR = "INSUFFICIENT_RESOURCE_ERROR"
    """Issuer has no available credit (→ 402)."""

    DUPLICATE_ERROR = "DUPLICATE_ERROR"
    """certId already exists on the ledger (→ 409, retry with a new certId)."""

    SIGNATURE_DECLINED = "SIGNATURE_DECLINED"
    """Key holder refused to sign the digest (→ 409)."""

    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
    """One-time rule or state transition violated (→ 409)."""

    # --- Server-side errors ---
    TRANSIENT_SUBMISSION_ERROR = "TRANSIENT_SUBMISSION_ERROR"
    """Ledger congestion, nonce ordering or network timeout (→ 503)."""

    LEDGER_REJECTED = "LEDGER_REJECTED"
    """Ledger rejected the submission for a non-retryable reason (→ 502)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Incomplete or inconsistent domain/system configuration (→ 500)."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Credit store or journal failure (→ 500)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """Signing agent or other collaborator failure (→ 502)."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """Operation exceeded its time limit (→ 504)."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Unexpected infrastructure issue (→ 500)."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unclassified failure (→ 500)."""

    @property
    def retryable(self) -> bool:
        """True when the same logical request may succeed if tried again."""
        return self in _RETRYABLE

    @property
    def needs_new_digest(self) -> bool:
        """True when a retry must regenerate the certId and collect a new signature."""
        return self is ErrorCode.DUPLICATE_ERROR

    @property
    def security_relevant(self) -> bool:
        return self is ErrorCode.AUTHORIZATION_ERROR


_RETRYABLE = frozenset({ErrorCode.DUPLICATE_ERROR, ErrorCode.TRANSIENT_SUBMISSION_ERROR})


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "certificateName is required")
    >>> desc.code
    <ErrorCode.VALIDATION_ERROR: 'VALIDATION_ERROR'>
    >>> desc.retryable
    False
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

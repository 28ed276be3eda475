"""
Issuance state machine — the lifecycle of a single issuance attempt.

    DRAFTED → DIGEST_COMPUTED → AWAITING_SIGNATURE → SIGNED → VERIFIED → SUBMITTED → CONFIRMED
                                        │                 │                  │         │
                                        └→ DECLINED       └→ REJECTED        └→ FAILED ┘

DECLINED and REJECTED are terminal for the digest; a new attempt needs a new
record. FAILED carries the ledger's failure so callers can tell a retryable
cause (transient, duplicate certId) from a terminal one.

Attempts are immutable. `advance` returns a new attempt or a
BUSINESS_RULE_ERROR for a transition the lifecycle does not allow.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from cert_relayer.domain.models import CertificateRecord, DomainDescriptor, TransactionHandle
from cert_relayer.domain.signatures import SignatureTriple
from cert_relayer.domain.typed_data import PreparedIssuance, build_issuance_digest
from cert_relayer.railway import ErrorCode, FailureDescription, Result


class IssuanceState(StrEnum):
    DRAFTED = "DRAFTED"
    DIGEST_COMPUTED = "DIGEST_COMPUTED"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    SIGNED = "SIGNED"
    VERIFIED = "VERIFIED"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {IssuanceState.CONFIRMED, IssuanceState.DECLINED, IssuanceState.REJECTED, IssuanceState.FAILED}
)

_TRANSITIONS: dict[IssuanceState, frozenset[IssuanceState]] = {
    IssuanceState.DRAFTED: frozenset({IssuanceState.DIGEST_COMPUTED}),
    IssuanceState.DIGEST_COMPUTED: frozenset({IssuanceState.AWAITING_SIGNATURE}),
    IssuanceState.AWAITING_SIGNATURE: frozenset({IssuanceState.SIGNED, IssuanceState.DECLINED}),
    IssuanceState.SIGNED: frozenset({IssuanceState.VERIFIED, IssuanceState.REJECTED}),
    IssuanceState.VERIFIED: frozenset({IssuanceState.SUBMITTED, IssuanceState.FAILED}),
    IssuanceState.SUBMITTED: frozenset({IssuanceState.CONFIRMED, IssuanceState.FAILED}),
}


def can_transition(source: IssuanceState, target: IssuanceState) -> bool:
    return target in _TRANSITIONS.get(source, frozenset())


@dataclass(frozen=True, slots=True)
class IssuanceAttempt:
    """One pass of a record through the issuance lifecycle."""

    domain: DomainDescriptor
    record: CertificateRecord
    state: IssuanceState = IssuanceState.DRAFTED
    prepared: PreparedIssuance | None = None
    signature: SignatureTriple | None = None
    signer: str | None = None
    handle: TransactionHandle | None = None
    failure: FailureDescription | None = field(default=None, compare=False)

    @staticmethod
    def draft(domain: DomainDescriptor, record: CertificateRecord) -> IssuanceAttempt:
        return IssuanceAttempt(domain=domain, record=record)

    @property
    def digest(self) -> bytes:
        if self.prepared is None:
            raise ValueError(f"No digest computed yet (state={self.state})")
        return self.prepared.digest

    def advance(self, target: IssuanceState, **changes: Any) -> Result[IssuanceAttempt]:
        if not can_transition(self.state, target):
            return Result.failure(
                ErrorCode.BUSINESS_RULE_ERROR,
                f"Issuance cannot move from {self.state} to {target}",
            )
        return Result.success(replace(self, state=target, **changes))

    def compute_digest(self) -> Result[IssuanceAttempt]:
        return build_issuance_digest(self.domain, self.record).flat_map(
            lambda prepared: self.advance(IssuanceState.DIGEST_COMPUTED, prepared=prepared)
        )

    def terminate(self, target: IssuanceState, failure: FailureDescription) -> IssuanceAttempt:
        """
        Move to a terminal failure state, recording why.

        Unlike `advance`, an illegal transition raises: terminating from the
        wrong state is a programming error, not a runtime condition.
        """
        if not target.is_terminal or not can_transition(self.state, target):
            raise ValueError(f"Cannot terminate from {self.state} to {target}")
        return replace(self, state=target, failure=failure)


@dataclass(frozen=True, slots=True)
class IssuanceReceipt:
    """
    Journal entry for a digest.

    A VERIFIED entry without a transaction hash reserves the digest while
    it is being submitted. The signature is kept only as an audit artifact
    next to the transaction hash it authorized.
    """

    digest: bytes = field(repr=False)
    record: CertificateRecord
    signature: SignatureTriple
    tx_hash: str | None
    state: IssuanceState
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def digest_hex(self) -> str:
        return "0x" + self.digest.hex()

    @staticmethod
    def reservation(attempt: IssuanceAttempt) -> IssuanceReceipt:
        if attempt.state is not IssuanceState.VERIFIED or attempt.signature is None:
            raise ValueError(f"Only verified attempts can be reserved (state={attempt.state})")
        return IssuanceReceipt(
            digest=attempt.digest,
            record=attempt.record,
            signature=attempt.signature,
            tx_hash=None,
            state=IssuanceState.VERIFIED,
        )

    @staticmethod
    def from_attempt(attempt: IssuanceAttempt) -> IssuanceReceipt:
        if attempt.handle is None or attempt.signature is None:
            raise ValueError("Only submitted attempts can be journaled")
        return IssuanceReceipt(
            digest=attempt.digest,
            record=attempt.record,
            signature=attempt.signature,
            tx_hash=attempt.handle.tx_hash,
            state=attempt.state,
        )

    def handle(self) -> TransactionHandle:
        if self.tx_hash is None:
            raise ValueError(f"Digest {self.digest_hex} has no transaction yet")
        return TransactionHandle(
            tx_hash=self.tx_hash,
            cert_id=self.record.cert_id,
            digest=self.digest,
            submitted_at=self.updated_at,
        )

"""
Ports — Protocol-based interfaces for the relayer's collaborators.

    Domain ← Ports (protocols) ← Adapters (implementations)

  CreditStore       → who may issue, and how many certificates they have paid for
  IssuanceJournal   → which digests were already submitted (at most once per digest)
  LedgerGateway     → the CertificateAuthority contract and the credit token
  SignatureCustodian→ whoever holds the university key

Every synchronous port returns Result[T]; failures never escape as exceptions.
The custodian is async because a signature request can wait on a human and
may be cancelled at any time before it completes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from cert_relayer.domain.issuance import IssuanceReceipt, IssuanceState
from cert_relayer.domain.models import (
    CertificateRecord,
    ConfirmationStatus,
    IssuerAccount,
    OnChainCertificate,
    TransactionHandle,
)
from cert_relayer.domain.signatures import SignatureTriple
from cert_relayer.railway import Result


@runtime_checkable
class CreditStore(Protocol):
    """
    Port: issuer accounts and their issuance credit.

    `debit` and `grant_once` must be atomic: a debit never drives credit
    below zero and a one-time grant can be claimed by exactly one caller.
    """

    def lookup(self, address: str) -> Result[IssuerAccount]:
        """NOT_FOUND when no university owns `address`."""
        ...

    def debit(self, address: str, amount: int = 1) -> Result[int]:
        """Remaining credit; INSUFFICIENT_RESOURCE_ERROR when too little is left."""
        ...

    def grant_once(self, address: str, amount: int) -> Result[int]:
        """New balance; BUSINESS_RULE_ERROR when the grant was already claimed."""
        ...

    def accounts(self) -> Result[list[IssuerAccount]]: ...


@runtime_checkable
class IssuanceJournal(Protocol):
    """Port: audit trail of submitted digests, keyed by digest."""

    def find(self, digest: bytes) -> Result[IssuanceReceipt]:
        """NOT_FOUND when the digest was never submitted."""
        ...

    def reserve(self, receipt: IssuanceReceipt) -> Result[bool]:
        """Claim an unseen digest before submission; False when it is already journaled."""
        ...

    def release(self, digest: bytes) -> Result[int]:
        """Drop a reservation whose submission never reached the ledger."""
        ...

    def record(self, receipt: IssuanceReceipt) -> Result[IssuanceReceipt]: ...

    def pending(self) -> Result[list[IssuanceReceipt]]:
        """Receipts still in SUBMITTED state."""
        ...

    def update_state(self, digest: bytes, state: IssuanceState) -> Result[int]: ...


@runtime_checkable
class LedgerGateway(Protocol):
    """
    Port: the ledger-side execution environment.

    `submit` returns once the transaction is accepted into the mempool.
    Acceptance is not confirmation; `confirmation` reports the latter.
    """

    def submit(
        self, record: CertificateRecord, signature: SignatureTriple
    ) -> Result[TransactionHandle]: ...

    def confirmation(self, tx_hash: str) -> Result[ConfirmationStatus]: ...

    def query(self, cert_id: bytes) -> Result[OnChainCertificate]:
        """NOT_FOUND when the certId was never issued."""
        ...

    def domain_separator(self) -> Result[bytes]: ...

    def token_balance(self, address: str) -> Result[int]: ...

    def mint_tokens(self, address: str, amount: int) -> Result[str]: ...

    def burn_tokens(self, address: str, amount: int) -> Result[str]: ...


class SignatureDeclined(Exception):
    """Raised by a custodian when the key holder refuses to sign."""


@runtime_checkable
class SignatureCustodian(Protocol):
    """Port: obtain a 65-byte signature over a typed-data envelope."""

    async def sign_typed_data(self, envelope: dict[str, Any]) -> bytes: ...

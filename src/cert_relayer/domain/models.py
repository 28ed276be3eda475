"""
Domain models — immutable value objects for certificate issuance.

CertificateRecord is the payload a university signs. DomainDescriptor pins
every digest to one deployment of the verifying contract. Both validate their
fields on construction, so an instance that exists is always complete: a
partially configured domain or a short certId can never reach the digest
builder.

All models are frozen dataclasses. Mutating a record after its digest has
been derived is impossible by construction; a changed record is a new record
with a new digest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Callable, TypeVar

from eth_utils import is_address, to_bytes, to_checksum_address

from cert_relayer.railway import ErrorCode, Result

T = TypeVar("T")

UINT256_MAX = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ─────────────────────── Field coercion ───────────────────────


def coerce_bytes32(value: Any, field_name: str) -> bytes:
    """Accept 32 raw bytes or a 0x-prefixed 64-digit hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    elif isinstance(value, str):
        if not value.startswith(("0x", "0X")):
            raise ValueError(f"{field_name} must be a 0x-prefixed hex string")
        try:
            raw = to_bytes(hexstr=value)
        except ValueError as e:
            raise ValueError(f"{field_name} is not valid hex: {value!r}") from e
    else:
        raise ValueError(f"{field_name} must be bytes or hex text, got {type(value).__name__}")
    if len(raw) != 32:
        raise ValueError(f"{field_name} must be exactly 32 bytes, got {len(raw)}")
    return raw


def coerce_address(value: Any, field_name: str) -> str:
    """Return the EIP-55 checksum form of a 20-byte address."""
    if isinstance(value, (bytes, bytearray)) and len(value) == 20:
        return to_checksum_address(bytes(value))
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"{field_name} is not a valid 20-byte address: {value!r}")
    return to_checksum_address(value)


def coerce_uint256(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer, got {type(value).__name__}")
    if not 0 <= value <= UINT256_MAX:
        raise ValueError(f"{field_name} is outside the uint256 range: {value}")
    return value


def validated(factory: Callable[[], T], code: ErrorCode, context: str) -> Result[T]:
    """Run a validating constructor, turning ValueError into a Result failure."""
    try:
        return Result.success(factory())
    except ValueError as e:
        return Result.failure(code, f"{context}: {e}", e)


# ─────────────────────── Signing domain ───────────────────────


@dataclass(frozen=True, slots=True)
class DomainDescriptor:
    """
    EIP-712 domain of the CertificateAuthority contract.

    Computed once per deployment target. Redeploying the contract or bumping
    the version changes the domain separator and invalidates every
    outstanding signature, so the version is explicit configuration.
    """

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("domain name is required")
        if not isinstance(self.version, str) or not self.version.strip():
            raise ValueError("domain version is required")
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int):
            raise ValueError("chain id must be an integer")
        if self.chain_id <= 0:
            raise ValueError(f"chain id must be positive, got {self.chain_id}")
        contract = coerce_address(self.verifying_contract, "verifying contract")
        if contract == ZERO_ADDRESS:
            raise ValueError("verifying contract must not be the zero address")
        object.__setattr__(self, "verifying_contract", contract)

    @staticmethod
    def create(
        name: str,
        version: str,
        chain_id: int,
        verifying_contract: str,
    ) -> Result[DomainDescriptor]:
        return validated(
            lambda: DomainDescriptor(name, version, chain_id, verifying_contract),
            ErrorCode.CONFIGURATION_ERROR,
            "Invalid signing domain",
        )


# ─────────────────────── Certificate payload ───────────────────────


@dataclass(frozen=True, slots=True)
class CertificateRecord:
    """
    The IssueCertificate message signed by the university.

    Hash fields are opaque 32-byte digests computed by the caller; the
    relayer never sees the student's name or email in this structure.
    `expiration_date == 0` means the certificate never expires.
    """

    cert_id: bytes = field(repr=False)
    issuer: str
    certificate_name: str
    person_name_hash: bytes = field(repr=False)
    email_hash: bytes = field(repr=False)
    issue_date: int
    expiration_date: int = 0
    metadata_uri: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "cert_id", coerce_bytes32(self.cert_id, "certId"))
        object.__setattr__(self, "issuer", coerce_address(self.issuer, "issuer"))
        if not isinstance(self.certificate_name, str):
            raise ValueError("certificateName must be text")
        object.__setattr__(
            self, "person_name_hash", coerce_bytes32(self.person_name_hash, "personNameHash")
        )
        object.__setattr__(self, "email_hash", coerce_bytes32(self.email_hash, "emailHash"))
        coerce_uint256(self.issue_date, "issueDate")
        coerce_uint256(self.expiration_date, "expirationDate")
        if not isinstance(self.metadata_uri, str):
            raise ValueError("metadataURI must be text")

    @staticmethod
    def create(
        cert_id: bytes | str,
        issuer: str,
        certificate_name: str,
        person_name_hash: bytes | str,
        email_hash: bytes | str,
        issue_date: int,
        expiration_date: int = 0,
        metadata_uri: str | None = "",
    ) -> Result[CertificateRecord]:
        return validated(
            lambda: CertificateRecord(
                cert_id=cert_id,  # type: ignore[arg-type]
                issuer=issuer,
                certificate_name=certificate_name,
                person_name_hash=person_name_hash,  # type: ignore[arg-type]
                email_hash=email_hash,  # type: ignore[arg-type]
                issue_date=issue_date,
                expiration_date=expiration_date,
                metadata_uri=metadata_uri or "",
            ),
            ErrorCode.VALIDATION_ERROR,
            "Invalid certificate record",
        )

    @property
    def cert_id_hex(self) -> str:
        return "0x" + self.cert_id.hex()

    def never_expires(self) -> bool:
        return self.expiration_date == 0


# ─────────────────────── Caller input ───────────────────────


@dataclass(frozen=True, slots=True)
class IssuanceRequest:
    """Raw issuance input before certId generation and hashing."""

    issuer: str
    student_name: str
    student_email: str
    certificate_name: str
    expiration_date: int = 0
    metadata_uri: str = ""

    @staticmethod
    def create(
        issuer: str | None,
        student_name: str | None,
        student_email: str | None,
        certificate_name: str | None,
        expiration_date: int | None = None,
        metadata_uri: str | None = None,
    ) -> Result[IssuanceRequest]:
        missing = [
            name
            for name, value in (
                ("issuer", issuer),
                ("studentName", student_name),
                ("studentEmail", student_email),
                ("certificateName", certificate_name),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR, f"Missing required fields: {', '.join(missing)}"
            )
        local, _, host = str(student_email).strip().partition("@")
        if not local or "." not in host:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR, f"Invalid student email: {student_email!r}"
            )
        return validated(
            lambda: IssuanceRequest(
                issuer=coerce_address(issuer, "issuer"),
                student_name=str(student_name),
                student_email=str(student_email),
                certificate_name=str(certificate_name).strip(),
                expiration_date=coerce_uint256(expiration_date or 0, "expirationDate"),
                metadata_uri=(metadata_uri or "").strip(),
            ),
            ErrorCode.VALIDATION_ERROR,
            "Invalid issuance request",
        )


# ─────────────────────── Collaborator values ───────────────────────


@dataclass(frozen=True, slots=True)
class IssuerAccount:
    """A university as seen by the credit store."""

    address: str
    available_credits: int
    has_claimed_free_credits: bool = False
    name: str | None = None


@dataclass(frozen=True, slots=True)
class TransactionHandle:
    """Ledger acknowledgement of an accepted submission (not yet confirmed)."""

    tx_hash: str
    cert_id: bytes = field(repr=False)
    digest: bytes = field(repr=False)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ConfirmationStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"


@dataclass(frozen=True, slots=True)
class OnChainCertificate:
    """A certificate as stored by the CertificateAuthority contract."""

    record: CertificateRecord
    valid: bool

    def is_expired(self, now: int) -> bool:
        """Zero expiration is the "never expires" sentinel, not the epoch."""
        if self.record.never_expires():
            return False
        return now >= self.record.expiration_date

    def is_live(self, now: int) -> bool:
        return self.valid and not self.is_expired(now)

"""
Typed-data digest builder — EIP-712 hashing of IssueCertificate messages.

The digest computed here is re-derived independently by the
CertificateAuthority contract when the relayer submits the issuance. Both
sides must agree byte for byte, so the field lists below are the single source
of truth: the type descriptor strings, the type hashes, the ABI encoding of
struct values and the wallet-facing envelope are all generated from them.

    digest = keccak256(0x19 0x01 ‖ domainSeparator ‖ structHash)

    domainSeparator = keccak256(abi.encode(
        DOMAIN_TYPEHASH, keccak(name), keccak(version), chainId, verifyingContract))

    structHash = keccak256(abi.encode(
        ISSUE_CERTIFICATE_TYPEHASH, certId, university, keccak(certificateName),
        personNameHash, emailHash, issueDate, expirationDate, keccak(metadataURI)))

Dynamic `string` members are always hashed before encoding; abi.encode only
has fixed-width 32-byte slots for them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from eth_abi import encode
from eth_utils import keccak

from cert_relayer.domain.models import CertificateRecord, DomainDescriptor
from cert_relayer.railway import ErrorCode, Result

EIP712_PREFIX = b"\x19\x01"
PRIMARY_TYPE = "IssueCertificate"


@dataclass(frozen=True, slots=True)
class TypedField:
    """One member of an EIP-712 struct: wire name, Solidity type, Python attribute."""

    name: str
    type: str
    attribute: str


EIP712_DOMAIN_FIELDS: tuple[TypedField, ...] = (
    TypedField("name", "string", "name"),
    TypedField("version", "string", "version"),
    TypedField("chainId", "uint256", "chain_id"),
    TypedField("verifyingContract", "address", "verifying_contract"),
)

ISSUE_CERTIFICATE_FIELDS: tuple[TypedField, ...] = (
    TypedField("certId", "bytes32", "cert_id"),
    TypedField("university", "address", "issuer"),
    TypedField("certificateName", "string", "certificate_name"),
    TypedField("personNameHash", "bytes32", "person_name_hash"),
    TypedField("emailHash", "bytes32", "email_hash"),
    TypedField("issueDate", "uint256", "issue_date"),
    TypedField("expirationDate", "uint256", "expiration_date"),
    TypedField("metadataURI", "string", "metadata_uri"),
)


def encode_type(primary_type: str, fields: tuple[TypedField, ...]) -> str:
    """Render `Name(type1 name1,type2 name2,...)` with no spaces after commas."""
    members = ",".join(f"{f.type} {f.name}" for f in fields)
    return f"{primary_type}({members})"


DOMAIN_TYPE = encode_type("EIP712Domain", EIP712_DOMAIN_FIELDS)
ISSUE_CERTIFICATE_TYPE = encode_type(PRIMARY_TYPE, ISSUE_CERTIFICATE_FIELDS)
DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
ISSUE_CERTIFICATE_TYPEHASH = keccak(text=ISSUE_CERTIFICATE_TYPE)


def _encode_member(f: TypedField, value: Any) -> tuple[str, Any]:
    if f.type == "string":
        return "bytes32", keccak(text=value)
    if f.type == "bytes":
        return "bytes32", keccak(value)
    return f.type, value


def hash_struct(typehash: bytes, fields: tuple[TypedField, ...], source: object) -> bytes:
    """keccak256(abi.encode(typehash, member_1, ..., member_n)) in declared field order."""
    abi_types = ["bytes32"]
    values: list[Any] = [typehash]
    for f in fields:
        abi_type, value = _encode_member(f, getattr(source, f.attribute))
        abi_types.append(abi_type)
        values.append(value)
    return keccak(encode(abi_types, values))


def domain_separator(domain: DomainDescriptor) -> bytes:
    return hash_struct(DOMAIN_TYPEHASH, EIP712_DOMAIN_FIELDS, domain)


def struct_hash(record: CertificateRecord) -> bytes:
    return hash_struct(ISSUE_CERTIFICATE_TYPEHASH, ISSUE_CERTIFICATE_FIELDS, record)


def issuance_digest(domain: DomainDescriptor, record: CertificateRecord) -> bytes:
    """The 32-byte value the university signs and the contract recovers against."""
    return keccak(EIP712_PREFIX + domain_separator(domain) + struct_hash(record))


# ─────────────────────── Wallet envelope ───────────────────────


def _json_value(f: TypedField, value: Any) -> Any:
    if f.type == "bytes32":
        return "0x" + bytes(value).hex()
    return value


def _members(fields: tuple[TypedField, ...], source: object) -> dict[str, Any]:
    return {f.name: _json_value(f, getattr(source, f.attribute)) for f in fields}


def _type_list(fields: tuple[TypedField, ...]) -> list[dict[str, str]]:
    return [{"name": f.name, "type": f.type} for f in fields]


def record_message(record: CertificateRecord) -> dict[str, Any]:
    """The IssueCertificate message in wire form (camelCase keys, hex bytes32)."""
    return _members(ISSUE_CERTIFICATE_FIELDS, record)


def typed_data_envelope(domain: DomainDescriptor, record: CertificateRecord) -> dict[str, Any]:
    """
    Build the `eth_signTypedData_v4` payload for a record.

    JSON-serializable as-is; wallets and `eth_account.messages.encode_typed_data`
    derive the same digest as `issuance_digest`.
    """
    return {
        "types": {
            "EIP712Domain": _type_list(EIP712_DOMAIN_FIELDS),
            PRIMARY_TYPE: _type_list(ISSUE_CERTIFICATE_FIELDS),
        },
        "primaryType": PRIMARY_TYPE,
        "domain": _members(EIP712_DOMAIN_FIELDS, domain),
        "message": record_message(record),
    }


@dataclass(frozen=True, slots=True)
class PreparedIssuance:
    """A record together with every intermediate value of its digest."""

    domain: DomainDescriptor
    record: CertificateRecord
    domain_separator: bytes = field(repr=False)
    struct_hash: bytes = field(repr=False)
    digest: bytes
    envelope: dict[str, Any] = field(repr=False, compare=False)

    @property
    def digest_hex(self) -> str:
        return "0x" + self.digest.hex()


def build_issuance_digest(
    domain: DomainDescriptor, record: CertificateRecord
) -> Result[PreparedIssuance]:
    """
    Derive domain separator, struct hash, digest and envelope for a record.

    Encoding failures (e.g. a text field that cannot be UTF-8 encoded) are
    reported as VALIDATION_ERROR.
    """

    def _build() -> PreparedIssuance:
        separator = domain_separator(domain)
        message_hash = struct_hash(record)
        return PreparedIssuance(
            domain=domain,
            record=record,
            domain_separator=separator,
            struct_hash=message_hash,
            digest=keccak(EIP712_PREFIX + separator + message_hash),
            envelope=typed_data_envelope(domain, record),
        )

    return Result.from_computation(
        _build, ErrorCode.VALIDATION_ERROR, "Failed to encode certificate typed data"
    )

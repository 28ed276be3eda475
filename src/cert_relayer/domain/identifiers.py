"""
Certificate identifiers and privacy hashes.

certId = keccak256(abi.encodePacked(address issuer, string email, uint256 timestamp, uint256 nonce))

Uniqueness is probabilistic. A ledger "already exists" rejection is a
DUPLICATE_ERROR; the remedy is a fresh nonce, a new certId, a new digest and
a new signature.
"""

from __future__ import annotations

import secrets

from eth_abi.packed import encode_packed
from eth_utils import keccak, to_checksum_address

NONCE_BITS = 64


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_person_name(name: str) -> str:
    return name.strip()


def hash_text(value: str) -> bytes:
    """keccak256 of the UTF-8 bytes of `value`."""
    return keccak(text=value)


def person_name_hash(name: str) -> bytes:
    return hash_text(normalize_person_name(name))


def email_hash(email: str) -> bytes:
    return hash_text(normalize_email(email))


def new_nonce() -> int:
    return secrets.randbits(NONCE_BITS)


def generate_cert_id(
    issuer: str,
    student_email: str,
    timestamp: int,
    nonce: int | None = None,
) -> bytes:
    """Derive a 32-byte certificate identifier; draws a random nonce when none is given."""
    if nonce is None:
        nonce = new_nonce()
    packed = encode_packed(
        ["address", "string", "uint256", "uint256"],
        [to_checksum_address(issuer), normalize_email(student_email), timestamp, nonce],
    )
    return keccak(packed)

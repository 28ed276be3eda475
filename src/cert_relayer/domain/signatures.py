"""
Signature verifier — split, validate and recover secp256k1 signatures.

Signatures arrive in two shapes: a 65-byte `r ‖ s ‖ v` blob (what
`eth_signTypedData_v4` returns) or pre-split (v, r, s) scalars (what the
contract's `issueCertificateWithSignature` takes). Both normalize to a
SignatureTriple that remembers the caller's v encoding, so a blob split into
a triple joins back to the identical bytes.

Two failure classes are kept apart on purpose:
  - MALFORMED_SIGNATURE  — the input is not a usable signature (client bug)
  - AUTHORIZATION_ERROR  — the signature is fine but recovers to someone else
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import structlog
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import to_bytes

from cert_relayer.railway import ErrorCode, Result

log = structlog.get_logger()

SIGNATURE_LENGTH = 65
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

# Legacy Ethereum encoding (27/28) and raw recovery ids (0/1).
_LEGACY_V_OFFSET = 27
_ACCEPTED_V = frozenset({0, 1, 27, 28})


def _malformed(message: str, exception: BaseException | None = None) -> Result[Any]:
    return Result.failure(ErrorCode.MALFORMED_SIGNATURE, message, exception)


def _scalar_bytes(value: Any, name: str) -> bytes:
    if isinstance(value, bool):
        raise ValueError(f"{name} must not be a boolean")
    if isinstance(value, int):
        if value < 0 or value.bit_length() > 256:
            raise ValueError(f"{name} does not fit in 32 bytes")
        return value.to_bytes(32, "big")
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    elif isinstance(value, str):
        raw = to_bytes(hexstr=value)
    else:
        raise ValueError(f"{name} has unsupported type {type(value).__name__}")
    if len(raw) != 32:
        raise ValueError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True, slots=True)
class SignatureTriple:
    """
    (v, r, s) of a recoverable ECDSA signature.

    `v` is stored exactly as supplied (0/1 or 27/28); use `recovery_id` for
    the zero-based form eth_keys expects and `ledger_v` for the uint8 the
    contract's ecrecover expects.
    """

    v: int
    r: bytes = field(repr=False)
    s: bytes = field(repr=False)

    @property
    def recovery_id(self) -> int:
        return self.v - _LEGACY_V_OFFSET if self.v >= _LEGACY_V_OFFSET else self.v

    @property
    def ledger_v(self) -> int:
        return self.recovery_id + _LEGACY_V_OFFSET

    @property
    def r_int(self) -> int:
        return int.from_bytes(self.r, "big")

    @property
    def s_int(self) -> int:
        return int.from_bytes(self.s, "big")

    def to_bytes(self) -> bytes:
        return self.r + self.s + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()

    def as_dict(self) -> dict[str, Any]:
        return {"v": self.v, "r": "0x" + self.r.hex(), "s": "0x" + self.s.hex()}

    @staticmethod
    def create(v: Any, r: Any, s: Any) -> Result[SignatureTriple]:
        """
        Validate scalars and build a triple.

        Rejects v outside {0, 1, 27, 28}, r or s of zero or ≥ n, and
        high-s (malleable) signatures.
        """
        if isinstance(v, bool) or not isinstance(v, int) or v not in _ACCEPTED_V:
            return _malformed(f"Unsupported recovery id v={v!r}; expected 0, 1, 27 or 28")
        try:
            r_bytes = _scalar_bytes(r, "r")
            s_bytes = _scalar_bytes(s, "s")
        except ValueError as e:
            return _malformed(f"Invalid signature scalar: {e}", e)

        r_int = int.from_bytes(r_bytes, "big")
        s_int = int.from_bytes(s_bytes, "big")
        if not 0 < r_int < SECP256K1_N:
            return _malformed("Signature r is outside the curve order")
        if not 0 < s_int < SECP256K1_N:
            return _malformed("Signature s is outside the curve order")
        if s_int > SECP256K1_HALF_N:
            return _malformed("Signature s is in the upper half order (malleable signature)")
        return Result.success(SignatureTriple(v=v, r=r_bytes, s=s_bytes))


SignatureInput = Union[bytes, bytearray, str, SignatureTriple, Mapping[str, Any]]


def split_signature(signature: bytes | bytearray | str) -> Result[SignatureTriple]:
    """Split a 65-byte `r ‖ s ‖ v` blob (raw or 0x-hex) into a validated triple."""
    if isinstance(signature, str):
        if not signature.startswith(("0x", "0X")):
            return _malformed("Signature hex must be 0x-prefixed")
        try:
            raw = to_bytes(hexstr=signature)
        except ValueError as e:
            return _malformed("Signature is not valid hex", e)
    elif isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    else:
        return _malformed(f"Unsupported signature type {type(signature).__name__}")

    if len(raw) != SIGNATURE_LENGTH:
        return _malformed(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    return SignatureTriple.create(raw[64], raw[:32], raw[32:64])


def join_signature(triple: SignatureTriple) -> bytes:
    """Reassemble a triple into the 65-byte blob it was split from."""
    return triple.to_bytes()


def coerce_signature(signature: SignatureInput) -> Result[SignatureTriple]:
    """Normalize any accepted signature shape into a SignatureTriple."""
    match signature:
        case SignatureTriple():
            return SignatureTriple.create(signature.v, signature.r, signature.s)
        case Mapping():
            if not all(key in signature for key in ("v", "r", "s")):
                return _malformed("Signature components must include v, r and s")
            return SignatureTriple.create(signature["v"], signature["r"], signature["s"])
        case bytes() | bytearray() | str():
            return split_signature(signature)
    return _malformed(f"Unsupported signature type {type(signature).__name__}")


def addresses_match(left: str, right: str) -> bool:
    """Compare two hex addresses ignoring checksum casing."""
    return left.lower() == right.lower()


def recover_signer(digest: bytes, signature: SignatureInput) -> Result[str]:
    """
    Recover the checksum address that produced `signature` over `digest`.

    The digest is used as-is (no EIP-191 personal-message prefix).
    """
    if not isinstance(digest, (bytes, bytearray)) or len(digest) != 32:
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Digest must be exactly 32 bytes")

    def _recover(triple: SignatureTriple) -> Result[str]:
        try:
            key_signature = keys.Signature(vrs=(triple.recovery_id, triple.r_int, triple.s_int))
            public_key = key_signature.recover_public_key_from_msg_hash(bytes(digest))
        except (BadSignature, KeyValidationError) as e:
            return _malformed(f"Signature does not recover to a public key: {e}", e)
        return Result.success(public_key.to_checksum_address())

    return coerce_signature(signature).flat_map(_recover)


def verify_issuer_signature(
    digest: bytes,
    signature: SignatureInput,
    claimed_issuer: str,
) -> Result[str]:
    """
    Recover the signer and require it to equal `claimed_issuer`.

    Success carries the recovered address. A mismatch is an
    AUTHORIZATION_ERROR and is logged as a security event.
    """

    def _check(recovered: str) -> Result[str]:
        if addresses_match(recovered, claimed_issuer):
            return Result.success(recovered)
        log.warning(
            "security.signature_mismatch",
            digest="0x" + bytes(digest).hex(),
            claimed_issuer=claimed_issuer,
            recovered_signer=recovered,
        )
        return Result.failure(
            ErrorCode.AUTHORIZATION_ERROR,
            f"Signature was produced by {recovered}, not by issuer {claimed_issuer}",
        )

    return recover_signer(digest, signature).flat_map(_check)

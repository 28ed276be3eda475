"""
Recompute every intermediate value of an IssueCertificate digest.

Debugging script — given the JSON a wallet was asked to sign (the typedData
returned by /certificates/prepare, or {"domain": …, "message": …}), prints
the type strings, type hashes, domain separator, struct hash and digest.

Optionally:
  --signature 0x…   recover the signer and compare with message.university
  --rpc-url URL     read getDomainSeparator() from the verifying contract

Usage:
  python scripts/derive_digest.py typed_data.json --signature 0xabc… --rpc-url http://localhost:8545
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from web3 import Web3

from cert_relayer.adapters.ledger import CERTIFICATE_AUTHORITY_ABI
from cert_relayer.domain.models import CertificateRecord, DomainDescriptor
from cert_relayer.domain.signatures import recover_signer, verify_issuer_signature
from cert_relayer.domain.typed_data import (
    DOMAIN_TYPE,
    DOMAIN_TYPEHASH,
    ISSUE_CERTIFICATE_TYPE,
    ISSUE_CERTIFICATE_TYPEHASH,
    build_issuance_digest,
)


def _load(path: Path) -> tuple[DomainDescriptor, CertificateRecord]:
    data: dict[str, Any] = json.loads(path.read_text())
    typed = data.get("typedData", data)
    domain, message = typed["domain"], typed["message"]
    return (
        DomainDescriptor(
            name=domain["name"],
            version=domain["version"],
            chain_id=int(domain["chainId"]),
            verifying_contract=domain["verifyingContract"],
        ),
        CertificateRecord(
            cert_id=message["certId"],
            issuer=message["university"],
            certificate_name=message["certificateName"],
            person_name_hash=message["personNameHash"],
            email_hash=message["emailHash"],
            issue_date=int(message["issueDate"]),
            expiration_date=int(message.get("expirationDate", 0)),
            metadata_uri=message.get("metadataURI", ""),
        ),
    )


def _row(label: str, value: str) -> None:
    print(f"{label:<22} {value}")  # noqa: T201


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("typed_data", type=Path)
    parser.add_argument("--signature", help="65-byte 0x-hex signature to recover")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint for getDomainSeparator()")
    args = parser.parse_args(argv)

    domain, record = _load(args.typed_data)
    prepared = build_issuance_digest(domain, record)
    if prepared.is_failure():
        _row("error", str(prepared.error()))
        return 1
    values = prepared.value()

    _row("domain type", DOMAIN_TYPE)
    _row("domain typehash", "0x" + DOMAIN_TYPEHASH.hex())
    _row("message type", ISSUE_CERTIFICATE_TYPE)
    _row("message typehash", "0x" + ISSUE_CERTIFICATE_TYPEHASH.hex())
    _row("domain separator", "0x" + values.domain_separator.hex())
    _row("struct hash", "0x" + values.struct_hash.hex())
    _row("digest", values.digest_hex)

    exit_code = 0
    if args.rpc_url:
        w3 = Web3(Web3.HTTPProvider(args.rpc_url))
        contract = w3.eth.contract(address=domain.verifying_contract, abi=CERTIFICATE_AUTHORITY_ABI)
        remote = bytes(contract.functions.getDomainSeparator().call())
        matches = remote == values.domain_separator
        _row("contract separator", "0x" + remote.hex() + ("  (match)" if matches else "  (MISMATCH)"))
        exit_code |= 0 if matches else 2

    if args.signature:
        recovered = recover_signer(values.digest, args.signature)
        if recovered.is_failure():
            _row("recovered signer", str(recovered.error()))
            return exit_code | 4
        verdict = verify_issuer_signature(values.digest, args.signature, record.issuer)
        suffix = "  (issuer)" if verdict.is_success() else f"  (expected {record.issuer})"
        _row("recovered signer", recovered.value() + suffix)
        exit_code |= 0 if verdict.is_success() else 4

    return exit_code


if __name__ == "__main__":
    sys.exit(main())

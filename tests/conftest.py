"""
Shared test fixtures and helpers for the cert-relayer test suite.

Keys are the well-known Hardhat development accounts, so signatures produced
here are deterministic and never worth anything on a real chain.
"""

from __future__ import annotations

from typing import Any

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount

from cert_relayer.domain.identifiers import email_hash, person_name_hash
from cert_relayer.domain.models import CertificateRecord, DomainDescriptor, IssuerAccount
from cert_relayer.domain.typed_data import PreparedIssuance, build_issuance_digest

UNIVERSITY_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
STRANGER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
RELAYER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
TOKEN_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
CHAIN_ID = 11155111

ISSUE_DATE = 1_700_000_000
CERT_ID = "0x" + "ab" * 32


@pytest.fixture()
def domain() -> DomainDescriptor:
    return DomainDescriptor(
        name="CertificateAuthority",
        version="1",
        chain_id=CHAIN_ID,
        verifying_contract=CONTRACT_ADDRESS,
    )


@pytest.fixture()
def university() -> LocalAccount:
    return Account.from_key(UNIVERSITY_KEY)


@pytest.fixture()
def stranger() -> LocalAccount:
    return Account.from_key(STRANGER_KEY)


def make_record(issuer: str, **overrides: Any) -> CertificateRecord:
    """A Bachelor of Science record for `issuer`; keyword overrides replace fields."""
    fields: dict[str, Any] = {
        "cert_id": CERT_ID,
        "issuer": issuer,
        "certificate_name": "Bachelor of Science",
        "person_name_hash": person_name_hash("Ada Lovelace"),
        "email_hash": email_hash("ada@example.edu"),
        "issue_date": ISSUE_DATE,
        "expiration_date": 0,
        "metadata_uri": "",
    }
    fields.update(overrides)
    return CertificateRecord(**fields)


@pytest.fixture()
def record(university: LocalAccount) -> CertificateRecord:
    return make_record(university.address)


@pytest.fixture()
def prepared(domain: DomainDescriptor, record: CertificateRecord) -> PreparedIssuance:
    return build_issuance_digest(domain, record).value()


def sign_envelope(account: LocalAccount, envelope: dict[str, Any]) -> bytes:
    """Sign a typed-data envelope the way a wallet would (eth_signTypedData_v4)."""
    return bytes(account.sign_typed_data(full_message=envelope).signature)


@pytest.fixture()
def issuer_account(university: LocalAccount) -> IssuerAccount:
    return IssuerAccount(address=university.address, available_credits=5, name="Test University")

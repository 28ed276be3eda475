"""
Unit tests for the typed-data digest builder.

The independent reference for every hash is eth-account's EIP-712
implementation (the same one wallets mirror): its SignableMessage carries the
domain separator as `header` and the struct hash as `body`.
"""

from __future__ import annotations

from dataclasses import replace

import pytest
from eth_abi import encode
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from cert_relayer.domain.models import CertificateRecord, DomainDescriptor
from cert_relayer.domain.typed_data import (
    DOMAIN_TYPE,
    DOMAIN_TYPEHASH,
    ISSUE_CERTIFICATE_TYPE,
    ISSUE_CERTIFICATE_TYPEHASH,
    build_issuance_digest,
    domain_separator,
    issuance_digest,
    record_message,
    struct_hash,
    typed_data_envelope,
)
from cert_relayer.railway import ErrorCode, ResultAssertions
from tests.conftest import CONTRACT_ADDRESS, make_record


class TestTypeStrings:
    def test_domain_type_string(self) -> None:
        assert DOMAIN_TYPE == (
            "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
        )
        assert DOMAIN_TYPEHASH == keccak(text=DOMAIN_TYPE)

    def test_issue_certificate_type_string(self) -> None:
        """
        GIVEN the IssueCertificate struct
        WHEN its type string is encoded
        THEN the members appear in declaration order with no spaces after commas.
        """
        assert ISSUE_CERTIFICATE_TYPE == (
            "IssueCertificate(bytes32 certId,address university,string certificateName,"
            "bytes32 personNameHash,bytes32 emailHash,uint256 issueDate,"
            "uint256 expirationDate,string metadataURI)"
        )
        assert ISSUE_CERTIFICATE_TYPEHASH == keccak(text=ISSUE_CERTIFICATE_TYPE)


class TestDomainSeparator:
    def test_matches_manual_abi_encoding(self, domain: DomainDescriptor) -> None:
        expected = keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    DOMAIN_TYPEHASH,
                    keccak(text="CertificateAuthority"),
                    keccak(text="1"),
                    domain.chain_id,
                    CONTRACT_ADDRESS,
                ],
            )
        )
        assert domain_separator(domain) == expected

    def test_matches_eth_account(self, domain: DomainDescriptor, record: CertificateRecord) -> None:
        signable = encode_typed_data(full_message=typed_data_envelope(domain, record))
        assert signable.header == domain_separator(domain)

    @pytest.mark.parametrize(
        "change",
        [
            {"name": "OtherAuthority"},
            {"version": "2"},
            {"chain_id": 1},
            {"verifying_contract": "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"},
        ],
    )
    def test_any_domain_change_changes_separator(
        self, domain: DomainDescriptor, change: dict[str, object]
    ) -> None:
        assert domain_separator(replace(domain, **change)) != domain_separator(domain)


class TestStructHash:
    def test_strings_are_hashed_before_encoding(self, record: CertificateRecord) -> None:
        expected = keccak(
            encode(
                [
                    "bytes32", "bytes32", "address", "bytes32",
                    "bytes32", "bytes32", "uint256", "uint256", "bytes32",
                ],
                [
                    ISSUE_CERTIFICATE_TYPEHASH,
                    record.cert_id,
                    record.issuer,
                    keccak(text="Bachelor of Science"),
                    record.person_name_hash,
                    record.email_hash,
                    record.issue_date,
                    0,
                    keccak(text=""),
                ],
            )
        )
        assert struct_hash(record) == expected

    def test_matches_eth_account(self, domain: DomainDescriptor, record: CertificateRecord) -> None:
        signable = encode_typed_data(full_message=typed_data_envelope(domain, record))
        assert signable.body == struct_hash(record)


class TestIssuanceDigest:
    def test_bachelor_of_science_scenario(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        """
        GIVEN a Bachelor of Science record with no expiration and empty metadata
        WHEN the digest is built
        THEN it equals keccak(0x1901 ‖ domainSeparator ‖ structHash).
        """
        prepared = ResultAssertions.assert_success(build_issuance_digest(domain, record))

        assert prepared.digest == keccak(
            b"\x19\x01" + domain_separator(domain) + struct_hash(record)
        )
        assert prepared.digest == issuance_digest(domain, record)
        assert len(prepared.digest) == 32
        assert prepared.digest_hex == "0x" + prepared.digest.hex()

    def test_is_deterministic(self, domain: DomainDescriptor, record: CertificateRecord) -> None:
        first = build_issuance_digest(domain, record).value()
        second = build_issuance_digest(domain, make_record(record.issuer)).value()
        assert first.digest == second.digest

    @pytest.mark.parametrize(
        "change",
        [
            {"cert_id": "0x" + "cd" * 32},
            {"certificate_name": "Bachelor of Arts"},
            {"person_name_hash": keccak(text="Grace Hopper")},
            {"email_hash": keccak(text="grace@example.edu")},
            {"issue_date": 1_700_000_001},
            {"expiration_date": 1_800_000_000},
            {"metadata_uri": "ipfs://bafy"},
        ],
    )
    def test_any_field_change_changes_digest(
        self, domain: DomainDescriptor, record: CertificateRecord, change: dict[str, object]
    ) -> None:
        changed = make_record(record.issuer, **change)
        assert issuance_digest(domain, changed) != issuance_digest(domain, record)

    def test_issuer_change_changes_digest(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        other = make_record("0x70997970C51812dc3A010C7d01b50e0d17dc79C8")
        assert issuance_digest(domain, other) != issuance_digest(domain, record)

    def test_max_uint256_dates_are_encodable(self, domain: DomainDescriptor, record: CertificateRecord) -> None:
        edge = make_record(record.issuer, issue_date=2**256 - 1, expiration_date=2**256 - 1)
        ResultAssertions.assert_success(build_issuance_digest(domain, edge))

    def test_unencodable_text_is_validation_error(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        broken = make_record(record.issuer, certificate_name="\ud800")
        ResultAssertions.assert_failure(
            build_issuance_digest(domain, broken), ErrorCode.VALIDATION_ERROR
        )


class TestEnvelope:
    def test_envelope_shape(self, domain: DomainDescriptor, record: CertificateRecord) -> None:
        envelope = typed_data_envelope(domain, record)

        assert envelope["primaryType"] == "IssueCertificate"
        assert set(envelope["types"]) == {"EIP712Domain", "IssueCertificate"}
        assert envelope["domain"] == {
            "name": "CertificateAuthority",
            "version": "1",
            "chainId": domain.chain_id,
            "verifyingContract": CONTRACT_ADDRESS,
        }
        assert envelope["message"] == record_message(record)

    def test_message_uses_wire_names_and_hex(self, record: CertificateRecord) -> None:
        message = record_message(record)

        assert message["certId"] == record.cert_id_hex
        assert message["university"] == record.issuer
        assert message["metadataURI"] == ""
        assert message["personNameHash"].startswith("0x")

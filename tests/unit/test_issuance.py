"""Unit tests for the issuance state machine."""

from __future__ import annotations

import pytest
from eth_account.signers.local import LocalAccount

from cert_relayer.domain.issuance import (
    IssuanceAttempt,
    IssuanceReceipt,
    IssuanceState,
    can_transition,
)
from cert_relayer.domain.models import CertificateRecord, DomainDescriptor, TransactionHandle
from cert_relayer.domain.signatures import split_signature
from cert_relayer.railway import ErrorCode, FailureDescription, ResultAssertions
from tests.conftest import sign_envelope


class TestTransitions:
    @pytest.mark.parametrize(
        ("source", "target"),
        [
            (IssuanceState.DRAFTED, IssuanceState.DIGEST_COMPUTED),
            (IssuanceState.AWAITING_SIGNATURE, IssuanceState.DECLINED),
            (IssuanceState.SIGNED, IssuanceState.REJECTED),
            (IssuanceState.VERIFIED, IssuanceState.SUBMITTED),
            (IssuanceState.SUBMITTED, IssuanceState.CONFIRMED),
            (IssuanceState.SUBMITTED, IssuanceState.FAILED),
        ],
    )
    def test_allowed(self, source: IssuanceState, target: IssuanceState) -> None:
        assert can_transition(source, target)

    @pytest.mark.parametrize(
        ("source", "target"),
        [
            (IssuanceState.DRAFTED, IssuanceState.SIGNED),
            (IssuanceState.AWAITING_SIGNATURE, IssuanceState.SUBMITTED),
            (IssuanceState.SIGNED, IssuanceState.SUBMITTED),
            (IssuanceState.DECLINED, IssuanceState.SIGNED),
            (IssuanceState.CONFIRMED, IssuanceState.FAILED),
        ],
    )
    def test_forbidden(self, source: IssuanceState, target: IssuanceState) -> None:
        assert not can_transition(source, target)

    def test_terminal_states(self) -> None:
        terminal = {state for state in IssuanceState if state.is_terminal}
        assert terminal == {
            IssuanceState.CONFIRMED,
            IssuanceState.DECLINED,
            IssuanceState.REJECTED,
            IssuanceState.FAILED,
        }


class TestAttempt:
    def test_digest_exists_before_signature_is_requested(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        attempt = IssuanceAttempt.draft(domain, record)
        with pytest.raises(ValueError, match="No digest"):
            _ = attempt.digest

        computed = ResultAssertions.assert_success(attempt.compute_digest())
        awaiting = ResultAssertions.assert_success(
            computed.advance(IssuanceState.AWAITING_SIGNATURE)
        )
        assert awaiting.state is IssuanceState.AWAITING_SIGNATURE
        assert len(awaiting.digest) == 32

    def test_skipping_verification_is_business_rule_error(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        attempt = IssuanceAttempt.draft(domain, record)
        ResultAssertions.assert_failure(
            attempt.advance(IssuanceState.SUBMITTED), ErrorCode.BUSINESS_RULE_ERROR
        )

    def test_attempts_are_immutable(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        attempt = IssuanceAttempt.draft(domain, record)
        attempt.compute_digest()
        assert attempt.state is IssuanceState.DRAFTED

    def test_terminate_records_failure(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        awaiting = (
            IssuanceAttempt.draft(domain, record)
            .compute_digest()
            .flat_map(lambda a: a.advance(IssuanceState.AWAITING_SIGNATURE))
            .value()
        )
        failure = FailureDescription(ErrorCode.SIGNATURE_DECLINED, "no")
        declined = awaiting.terminate(IssuanceState.DECLINED, failure)

        assert declined.state is IssuanceState.DECLINED
        assert declined.failure is failure
        with pytest.raises(ValueError):
            declined.terminate(IssuanceState.FAILED, failure)


class TestReceipt:
    def test_from_submitted_attempt(
        self, domain: DomainDescriptor, record: CertificateRecord, university: LocalAccount
    ) -> None:
        verified = (
            IssuanceAttempt.draft(domain, record)
            .compute_digest()
            .flat_map(lambda a: a.advance(IssuanceState.AWAITING_SIGNATURE))
            .value()
        )
        assert verified.prepared is not None
        signature = split_signature(sign_envelope(university, verified.prepared.envelope)).value()
        handle = TransactionHandle(
            tx_hash="0x" + "11" * 32, cert_id=record.cert_id, digest=verified.digest
        )
        submitted = (
            verified.advance(IssuanceState.SIGNED, signature=signature)
            .flat_map(lambda a: a.advance(IssuanceState.VERIFIED, signer=university.address))
            .flat_map(lambda a: a.advance(IssuanceState.SUBMITTED, handle=handle))
            .value()
        )

        receipt = IssuanceReceipt.from_attempt(submitted)

        assert receipt.digest == submitted.digest
        assert receipt.state is IssuanceState.SUBMITTED
        assert receipt.handle().tx_hash == handle.tx_hash
        assert receipt.digest_hex.startswith("0x")

    def test_unsubmitted_attempt_cannot_be_journaled(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        with pytest.raises(ValueError):
            IssuanceReceipt.from_attempt(IssuanceAttempt.draft(domain, record))

    def test_reservation_of_verified_attempt(
        self, domain: DomainDescriptor, record: CertificateRecord, university: LocalAccount
    ) -> None:
        """
        GIVEN a verified attempt
        WHEN its digest is reserved
        THEN the receipt is VERIFIED, carries the signature and has no transaction yet.
        """
        awaiting = (
            IssuanceAttempt.draft(domain, record)
            .compute_digest()
            .flat_map(lambda a: a.advance(IssuanceState.AWAITING_SIGNATURE))
            .value()
        )
        assert awaiting.prepared is not None
        signature = split_signature(sign_envelope(university, awaiting.prepared.envelope)).value()
        verified = (
            awaiting.advance(IssuanceState.SIGNED, signature=signature)
            .flat_map(lambda a: a.advance(IssuanceState.VERIFIED, signer=university.address))
            .value()
        )

        reservation = IssuanceReceipt.reservation(verified)

        assert reservation.digest == verified.digest
        assert reservation.state is IssuanceState.VERIFIED
        assert reservation.signature == signature
        assert reservation.tx_hash is None
        with pytest.raises(ValueError):
            reservation.handle()

    def test_unverified_attempt_cannot_be_reserved(
        self, domain: DomainDescriptor, record: CertificateRecord
    ) -> None:
        with pytest.raises(ValueError):
            IssuanceReceipt.reservation(IssuanceAttempt.draft(domain, record))

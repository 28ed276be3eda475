"""
Pipeline — the issuance workflow as a railway of Result-returning stages.

Domain layer — no I/O of its own. Collaborators are injected via ports.

  prepare_issuance(request)
    → lookup issuer / require credit
      → generate certId, hash PII, stamp issueDate
        → compute digest + envelope             (DIGEST_COMPUTED → AWAITING_SIGNATURE)

  issue_certificate(attempt, signature)
    → split / validate signature                (SIGNED)
      relay_signed(attempt)
      → recover signer == issuer                (VERIFIED, or REJECTED)
        → journal: digest already submitted?    (idempotent short-circuit)
          → require credit, reserve digest
            → ledger.submit                     (SUBMITTED, or FAILED)
              → journal.record, debit credit, sync tokens

Ordering guarantees: the digest exists before any signature is requested,
and the signature is verified before any credit is debited.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

import structlog

from cert_relayer.domain.identifiers import email_hash, generate_cert_id, person_name_hash
from cert_relayer.domain.issuance import IssuanceAttempt, IssuanceReceipt, IssuanceState
from cert_relayer.domain.models import (
    CertificateRecord,
    ConfirmationStatus,
    DomainDescriptor,
    IssuanceRequest,
    IssuerAccount,
    OnChainCertificate,
    coerce_bytes32,
)
from cert_relayer.domain.ports import (
    CreditStore,
    IssuanceJournal,
    LedgerGateway,
    SignatureCustodian,
    SignatureDeclined,
)
from cert_relayer.domain.signatures import SignatureInput, coerce_signature, verify_issuer_signature
from cert_relayer.domain.typed_data import PreparedIssuance, domain_separator
from cert_relayer.railway import ErrorCode, FailureDescription, Result

log = structlog.get_logger()


def _now() -> int:
    return int(time.time())


def _require_credit(account: IssuerAccount, credits: int) -> Result[IssuerAccount]:
    if account.available_credits < credits:
        return Result.failure(
            ErrorCode.INSUFFICIENT_RESOURCE_ERROR,
            f"Issuer {account.address} has {account.available_credits} credit(s); "
            f"{credits} required",
        )
    return Result.success(account)


# ─────────────────────── Prepare ───────────────────────


def _build_record(
    request: IssuanceRequest,
    account: IssuerAccount,
    now: int,
    nonce: int | None,
) -> Result[CertificateRecord]:
    if request.expiration_date and request.expiration_date <= now:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"Expiration date {request.expiration_date} is not in the future",
        )
    return CertificateRecord.create(
        cert_id=generate_cert_id(account.address, request.student_email, now, nonce),
        issuer=account.address,
        certificate_name=request.certificate_name,
        person_name_hash=person_name_hash(request.student_name),
        email_hash=email_hash(request.student_email),
        issue_date=now,
        expiration_date=request.expiration_date,
        metadata_uri=request.metadata_uri,
    )


def _log_prepared(attempt: IssuanceAttempt) -> None:
    log.info(
        "issuance.prepared",
        cert_id=attempt.record.cert_id_hex,
        issuer=attempt.record.issuer,
        digest="0x" + attempt.digest.hex(),
    )


def prepare_issuance(
    domain: DomainDescriptor,
    request: IssuanceRequest,
    credit_store: CreditStore,
    now: int | None = None,
    nonce: int | None = None,
    credits: int = 1,
) -> Result[IssuanceAttempt]:
    """
    Turn caller input into an attempt awaiting the issuer's signature.

    issueDate is stamped here from `now`; clients never choose it.
    """
    issued_at = _now() if now is None else now
    return (
        credit_store.lookup(request.issuer)
        .flat_map(lambda account: _require_credit(account, credits))
        .flat_map(lambda account: _build_record(request, account, issued_at, nonce))
        .map(lambda record: IssuanceAttempt.draft(domain, record))
        .flat_map(lambda attempt: attempt.compute_digest())
        .flat_map(lambda attempt: attempt.advance(IssuanceState.AWAITING_SIGNATURE))
        .peek(_log_prepared)
    )


def restore_attempt(
    domain: DomainDescriptor,
    record: CertificateRecord,
    now: int | None = None,
    max_age_seconds: int = 3600,
    clock_skew_seconds: int = 300,
) -> Result[IssuanceAttempt]:
    """
    Rebuild an AWAITING_SIGNATURE attempt from a record echoed back by a client.

    The digest is always recomputed from the record; issueDate must lie
    within [now - max_age, now + skew].
    """
    current = _now() if now is None else now
    if record.issue_date > current + clock_skew_seconds:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR, f"issueDate {record.issue_date} lies in the future"
        )
    if record.issue_date < current - max_age_seconds:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"issueDate {record.issue_date} is older than {max_age_seconds}s; prepare again",
        )
    return (
        IssuanceAttempt.draft(domain, record)
        .compute_digest()
        .flat_map(lambda attempt: attempt.advance(IssuanceState.AWAITING_SIGNATURE))
    )


# ─────────────────────── Signature ───────────────────────


def prepared_digest(attempt: IssuanceAttempt) -> Result[PreparedIssuance]:
    """The digest bundle of an attempt that has been through `compute_digest`."""
    if attempt.prepared is None:
        return Result.failure(
            ErrorCode.BUSINESS_RULE_ERROR, f"No digest computed yet (state={attempt.state})"
        )
    return Result.success(attempt.prepared)


def accept_signature(attempt: IssuanceAttempt, signature: SignatureInput) -> Result[IssuanceAttempt]:
    return coerce_signature(signature).flat_map(
        lambda triple: attempt.advance(IssuanceState.SIGNED, signature=triple)
    )


def _declined(reason: str) -> FailureDescription:
    return FailureDescription(ErrorCode.SIGNATURE_DECLINED, f"Signature request {reason}")


def decline_signature(attempt: IssuanceAttempt, reason: str = "declined by key holder") -> IssuanceAttempt:
    """Terminal: the same digest can never be signed into an issuance again."""
    log.info("issuance.signature_declined", cert_id=attempt.record.cert_id_hex, reason=reason)
    return attempt.terminate(IssuanceState.DECLINED, _declined(reason))


async def request_signature(
    attempt: IssuanceAttempt,
    custodian: SignatureCustodian,
    timeout: float | None = None,
) -> Result[IssuanceAttempt]:
    """
    Ask the custodian to sign the attempt's envelope.

    Cancelling the awaiting task cancels the request; nothing has been
    submitted or debited at this point, so cancellation leaves no trace.
    """
    if attempt.state is not IssuanceState.AWAITING_SIGNATURE or attempt.prepared is None:
        return Result.failure(
            ErrorCode.BUSINESS_RULE_ERROR,
            f"Cannot request a signature in state {attempt.state}",
        )
    try:
        blob = await asyncio.wait_for(
            custodian.sign_typed_data(attempt.prepared.envelope), timeout
        )
    except SignatureDeclined as e:
        reason = str(e) or "declined by key holder"
        decline_signature(attempt, reason)
        return Result.failure_from(_declined(reason))
    except TimeoutError as e:
        return Result.failure(
            ErrorCode.TIMEOUT_ERROR, f"No signature within {timeout}s; prepare a new digest", e
        )
    except Exception as e:
        return Result.failure(ErrorCode.EXTERNAL_SERVICE_ERROR, "Signature custodian failed", e)
    return accept_signature(attempt, blob)


def reject_signature(attempt: IssuanceAttempt, failure: FailureDescription) -> IssuanceAttempt:
    """Terminal: the signature was not made by the record's issuer."""
    rejected = attempt.terminate(IssuanceState.REJECTED, failure)
    log.warning(
        "issuance.rejected",
        cert_id=attempt.record.cert_id_hex,
        state=str(rejected.state),
        error_code=failure.code.value,
    )
    return rejected


def verify_attempt(attempt: IssuanceAttempt) -> Result[IssuanceAttempt]:
    """SIGNED → VERIFIED when the recovered signer is the record's issuer, else REJECTED."""
    signature = attempt.signature
    if attempt.state is not IssuanceState.SIGNED or signature is None:
        return Result.failure(
            ErrorCode.BUSINESS_RULE_ERROR, f"Cannot verify a signature in state {attempt.state}"
        )

    def _reject_mismatch(failure: FailureDescription) -> None:
        if failure.code is ErrorCode.AUTHORIZATION_ERROR:
            reject_signature(attempt, failure)

    return (
        verify_issuer_signature(attempt.digest, signature, attempt.record.issuer)
        .peek_failure(_reject_mismatch)
        .flat_map(lambda signer: attempt.advance(IssuanceState.VERIFIED, signer=signer))
    )


# ─────────────────────── Submit ───────────────────────


@dataclass(frozen=True, slots=True)
class IssuanceOutcome:
    """
    A submitted attempt plus any bookkeeping that could not be completed.

    Once the ledger has accepted a transaction the outcome is a success even
    if the journal or debit step failed: resubmitting would only collide with
    the certId already in flight. Settlement problems are logged and listed
    here for the caller.
    """

    attempt: IssuanceAttempt
    already_submitted: bool = False
    settlement_failures: tuple[FailureDescription, ...] = field(default=(), compare=False)

    @property
    def settled(self) -> bool:
        return not self.settlement_failures


def _log_submit_failure(attempt: IssuanceAttempt, failure: FailureDescription) -> None:
    event = "ledger.submit_retryable" if failure.retryable else "ledger.submit_failed"
    log.warning(
        event,
        cert_id=attempt.record.cert_id_hex,
        error_code=failure.code.value,
        needs_new_digest=failure.code.needs_new_digest,
        message=failure.message,
    )


def _existing_submission(
    attempt: IssuanceAttempt, receipt: IssuanceReceipt
) -> Result[IssuanceOutcome]:
    if receipt.state is IssuanceState.FAILED:
        return Result.failure(
            ErrorCode.LEDGER_REJECTED,
            f"Digest {receipt.digest_hex} was already submitted and failed; prepare a new certificate",
        )
    if receipt.tx_hash is None:
        return Result.failure(
            ErrorCode.TRANSIENT_SUBMISSION_ERROR,
            f"Digest {receipt.digest_hex} is being submitted by another request; retry shortly",
        )
    log.info("issuance.already_submitted", digest=receipt.digest_hex, tx_hash=receipt.tx_hash)
    return attempt.advance(IssuanceState.SUBMITTED, handle=receipt.handle()).map(
        lambda submitted: IssuanceOutcome(
            attempt=replace(submitted, state=receipt.state), already_submitted=True
        )
    )


def fail_submission(
    attempt: IssuanceAttempt, failure: FailureDescription, journal: IssuanceJournal
) -> IssuanceAttempt:
    """
    VERIFIED → FAILED after the ledger refused the transaction.

    A failure that is retryable with the same digest releases the journal
    reservation so the signed record can be sent again. Any other failure
    marks the digest FAILED in the journal for good.
    """
    failed = attempt.terminate(IssuanceState.FAILED, failure)
    _log_submit_failure(failed, failure)
    if failure.retryable and not failure.code.needs_new_digest:
        bookkeeping = journal.release(attempt.digest)
    else:
        bookkeeping = journal.update_state(attempt.digest, IssuanceState.FAILED)
    bookkeeping.peek_failure(
        lambda error: log.error(
            "journal.reservation_unresolved",
            digest="0x" + attempt.digest.hex(),
            error_code=error.code.value,
            message=error.message,
        )
    )
    return failed


def sync_tokens(account: IssuerAccount, ledger: LedgerGateway) -> Result[int]:
    """
    Converge the issuer's on-chain credit token balance to its credit count.

    Returns the signed adjustment: positive when tokens were burned, negative
    when minted, zero when already in sync. Idempotent.
    """

    def _adjust(balance: int) -> Result[int]:
        surplus = balance - account.available_credits
        if surplus > 0:
            return ledger.burn_tokens(account.address, surplus).map(lambda _: surplus)
        if surplus < 0:
            return ledger.mint_tokens(account.address, -surplus).map(lambda _: surplus)
        return Result.success(0)

    return ledger.token_balance(account.address).flat_map(_adjust)


def _sync_tokens_best_effort(address: str, credit_store: CreditStore, ledger: LedgerGateway) -> None:
    result = credit_store.lookup(address).flat_map(lambda account: sync_tokens(account, ledger))
    result.either(
        on_success=lambda adjustment: log.info(
            "tokens.synced", issuer=address, adjustment=adjustment
        ),
        on_failure=lambda failure: log.warning(
            "tokens.sync_deferred", issuer=address, failure=str(failure)
        ),
    )


def _settle(
    attempt: IssuanceAttempt,
    credit_store: CreditStore,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
    credits: int,
) -> IssuanceOutcome:
    failures: list[FailureDescription] = []
    journal.record(IssuanceReceipt.from_attempt(attempt)).peek_failure(failures.append)
    credit_store.debit(attempt.record.issuer, credits).peek_failure(failures.append)
    for failure in failures:
        log.error(
            "issuance.settlement_incomplete",
            cert_id=attempt.record.cert_id_hex,
            error_code=failure.code.value,
            message=failure.message,
        )
    if not failures:
        _sync_tokens_best_effort(attempt.record.issuer, credit_store, ledger)
    return IssuanceOutcome(attempt=attempt, settlement_failures=tuple(failures))


def _submit_once(
    attempt: IssuanceAttempt,
    credit_store: CreditStore,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
    credits: int,
) -> Result[IssuanceOutcome]:
    signature = attempt.signature
    if signature is None:
        return Result.failure(ErrorCode.BUSINESS_RULE_ERROR, "Attempt carries no signature")
    existing = journal.find(attempt.digest)
    if existing.is_success():
        return _existing_submission(attempt, existing.value())
    if not existing.has_code(ErrorCode.NOT_FOUND):
        return Result.failure_from(existing.error())

    def _send(reserved: bool) -> Result[IssuanceOutcome]:
        if not reserved:
            return journal.find(attempt.digest).flat_map(
                lambda receipt: _existing_submission(attempt, receipt)
            )
        submitted = ledger.submit(attempt.record, signature)
        if submitted.is_failure():
            fail_submission(attempt, submitted.error(), journal)
            return Result.failure_from(submitted.error())
        return (
            attempt.advance(IssuanceState.SUBMITTED, handle=submitted.value())
            .peek(
                lambda advanced: log.info(
                    "issuance.submitted",
                    cert_id=advanced.record.cert_id_hex,
                    tx_hash=submitted.value().tx_hash,
                )
            )
            .map(lambda advanced: _settle(advanced, credit_store, journal, ledger, credits))
        )

    return (
        credit_store.lookup(attempt.record.issuer)
        .flat_map(lambda account: _require_credit(account, credits))
        .flat_map(lambda _: journal.reserve(IssuanceReceipt.reservation(attempt)))
        .flat_map(_send)
    )


def relay_signed(
    attempt: IssuanceAttempt,
    credit_store: CreditStore,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
    credits: int = 1,
) -> Result[IssuanceOutcome]:
    """
    Verify a SIGNED attempt and relay it to the ledger.

    The digest is reserved in the journal before the ledger sees it, so
    concurrent relays of the same signed record send one transaction.
    Submitting the same digest again returns the first handle.
    """
    return verify_attempt(attempt).flat_map(
        lambda verified: _submit_once(verified, credit_store, journal, ledger, credits)
    )


def issue_certificate(
    attempt: IssuanceAttempt,
    signature: SignatureInput,
    credit_store: CreditStore,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
    credits: int = 1,
) -> Result[IssuanceOutcome]:
    """Attach the issuer's signature to an awaiting attempt and relay it."""
    return accept_signature(attempt, signature).flat_map(
        lambda signed: relay_signed(signed, credit_store, journal, ledger, credits)
    )


# ─────────────────────── Confirm / reconcile ───────────────────────


def confirm_issuance(
    receipt: IssuanceReceipt,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
) -> Result[IssuanceState]:
    """Poll the ledger once for a submitted digest and record the outcome."""

    def _record(status: ConfirmationStatus) -> Result[IssuanceState]:
        match status:
            case ConfirmationStatus.CONFIRMED:
                target = IssuanceState.CONFIRMED
            case ConfirmationStatus.REVERTED:
                target = IssuanceState.FAILED
            case _:
                return Result.success(receipt.state)
        log.info("issuance.settled", digest=receipt.digest_hex, state=str(target))
        return journal.update_state(receipt.digest, target).map(lambda _: target)

    if receipt.tx_hash is None:
        return Result.failure(
            ErrorCode.BUSINESS_RULE_ERROR, f"Digest {receipt.digest_hex} has no transaction yet"
        )
    return ledger.confirmation(receipt.tx_hash).flat_map(_record)


@dataclass(frozen=True, slots=True)
class ReconciliationSummary:
    confirmed: int = 0
    reverted: int = 0
    pending: int = 0
    token_adjustments: int = 0
    errors: int = 0


def reconcile(
    journal: IssuanceJournal,
    credit_store: CreditStore,
    ledger: LedgerGateway,
) -> Result[ReconciliationSummary]:
    """
    Confirm every pending submission and converge token balances.

    Individual failures are counted and logged; only an unreadable journal or
    credit store fails the whole run.
    """

    def _confirm_all(receipts: list[IssuanceReceipt]) -> Result[ReconciliationSummary]:
        counts = {IssuanceState.CONFIRMED: 0, IssuanceState.FAILED: 0, IssuanceState.SUBMITTED: 0}
        errors = 0
        for receipt in receipts:
            outcome = confirm_issuance(receipt, journal, ledger)
            if outcome.is_success():
                counts[outcome.value()] = counts.get(outcome.value(), 0) + 1
            else:
                errors += 1
                log.warning(
                    "reconciler.confirmation_failed",
                    digest=receipt.digest_hex,
                    failure=str(outcome.error()),
                )
        return Result.success(
            ReconciliationSummary(
                confirmed=counts[IssuanceState.CONFIRMED],
                reverted=counts[IssuanceState.FAILED],
                pending=counts[IssuanceState.SUBMITTED],
                errors=errors,
            )
        )

    def _sync_all(summary: ReconciliationSummary) -> Result[ReconciliationSummary]:
        def _apply(accounts: list[IssuerAccount]) -> ReconciliationSummary:
            adjusted, errors = 0, summary.errors
            for account in accounts:
                outcome = sync_tokens(account, ledger)
                if outcome.is_failure():
                    errors += 1
                    log.warning(
                        "reconciler.token_sync_failed",
                        issuer=account.address,
                        failure=str(outcome.error()),
                    )
                elif outcome.value() != 0:
                    adjusted += 1
            return replace(summary, token_adjustments=adjusted, errors=errors)

        return credit_store.accounts().map(_apply)

    return journal.pending().flat_map(_confirm_all).flat_map(_sync_all)


# ─────────────────────── Queries / credits ───────────────────────


def verify_certificate(cert_id: str | bytes, ledger: LedgerGateway) -> Result[OnChainCertificate]:
    """Look a certificate up on-chain; NOT_FOUND when it was never issued."""
    try:
        raw_id = coerce_bytes32(cert_id, "certId")
    except ValueError as e:
        return Result.failure(ErrorCode.VALIDATION_ERROR, str(e), e)
    return ledger.query(raw_id)


def claim_free_credits(
    address: str,
    credit_store: CreditStore,
    ledger: LedgerGateway,
    amount: int,
) -> Result[int]:
    """One-time credit grant; mirrors the new balance as credit tokens when possible."""
    return credit_store.grant_once(address, amount).peek(
        lambda balance: log.info("credits.granted", issuer=address, amount=amount, balance=balance)
    ).peek(lambda _: _sync_tokens_best_effort(address, credit_store, ledger))


# ─────────────────────── End-to-end ───────────────────────


async def run_issuance(
    domain: DomainDescriptor,
    request: IssuanceRequest,
    custodian: SignatureCustodian,
    credit_store: CreditStore,
    journal: IssuanceJournal,
    ledger: LedgerGateway,
    credits: int = 1,
    signature_timeout: float | None = None,
    max_attempts: int = 3,
    clock: Callable[[], int] = _now,
) -> Result[IssuanceOutcome]:
    """
    Prepare, sign and submit one certificate.

    A DUPLICATE_ERROR from the ledger means the certId collided; the record
    is regenerated with a fresh nonce and signed again, up to `max_attempts`.
    """
    result: Result[IssuanceOutcome] = Result.failure(
        ErrorCode.BUSINESS_RULE_ERROR, "max_attempts must be at least 1"
    )
    for attempt_number in range(1, max_attempts + 1):
        prepared = prepare_issuance(domain, request, credit_store, clock(), credits=credits)
        signed = await prepared.flat_map_async(
            lambda attempt: request_signature(attempt, custodian, signature_timeout)
        )
        result = signed.flat_map(
            lambda attempt: relay_signed(attempt, credit_store, journal, ledger, credits)
        )
        if not result.has_code(ErrorCode.DUPLICATE_ERROR):
            return result
        log.warning("issuance.cert_id_collision", attempt=attempt_number, issuer=request.issuer)
    return result


def verify_domain(domain: DomainDescriptor, ledger: LedgerGateway) -> Result[bytes]:
    """
    Compare the locally derived domain separator with the contract's.

    A mismatch means every signature collected here would be rejected
    on-chain, so it is reported as a CONFIGURATION_ERROR.
    """
    local = domain_separator(domain)

    def _compare(remote: bytes) -> Result[bytes]:
        if remote == local:
            return Result.success(local)
        return Result.failure(
            ErrorCode.CONFIGURATION_ERROR,
            f"Domain separator mismatch: local 0x{local.hex()}, contract 0x{remote.hex()}",
        )

    return ledger.domain_separator().flat_map(_compare)

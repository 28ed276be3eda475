"""
FastAPI + Uvicorn ASGI application.

Serves the issuance API next to the background reconciliation scheduler.
Uvicorn serves this app with graceful shutdown (SIGTERM → drain + exit).

Architecture:
  - FastAPI: issuance endpoints + K8s health checks
  - Uvicorn: production ASGI server (handles signals, graceful shutdown)
  - APScheduler: reconciliation runs in a background thread
  - Blocking work (database, JSON-RPC) runs via asyncio.to_thread

Issuance flow as seen by a wallet client:
  1. POST /certificates/prepare  → certificateData + typedData + digest
  2. eth_signTypedData_v4(typedData) in the university wallet
  3. POST /certificates/issue    → {certificateData, signature} → txHash

Entry point for production: uvicorn cert_relayer.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from cert_relayer import __version__
from cert_relayer.adapters.repository import ensure_schema
from cert_relayer.config import AppSettings, IssuanceSettings
from cert_relayer.domain.models import (
    CertificateRecord,
    DomainDescriptor,
    IssuanceRequest,
    OnChainCertificate,
)
from cert_relayer.domain.ports import CreditStore, IssuanceJournal, LedgerGateway
from cert_relayer.domain.typed_data import PreparedIssuance, record_message
from cert_relayer.main import _create_adapters, configure_structlog
from cert_relayer.pipeline import (
    IssuanceOutcome,
    ReconciliationSummary,
    claim_free_credits,
    issue_certificate,
    prepare_issuance,
    prepared_digest,
    reconcile,
    restore_attempt,
    verify_certificate,
    verify_domain,
)
from cert_relayer.railway import ErrorCode, FailureDescription, Result
from cert_relayer.railway.http_support import ErrorResponse, build_fastapi_response
from cert_relayer.scheduler import create_scheduler
from cert_relayer.schemas import ClaimCreditsBody, IssueCertificateBody, PrepareCertificateBody


@dataclass(frozen=True, slots=True)
class Services:
    """Collaborators wired at startup and shared by the request handlers."""

    domain: DomainDescriptor
    credit_store: CreditStore
    journal: IssuanceJournal
    ledger: LedgerGateway
    issuance: IssuanceSettings


# ─────────────────────── Global State ───────────────────────
# Set during app startup; read by the health checks and the request handlers.

_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_scheduler_ready = False
_error_message: str | None = None
_reconcile_fn: Callable[[], Result[ReconciliationSummary]] | None = None
_services: Services | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: load settings, create adapters, verify the signing domain
    against the contract and start the scheduler in a background thread.
    Shutdown: gracefully stop scheduler and thread.
    """
    global _scheduler_thread, _scheduler_started, _scheduler_ready, _error_message
    global _reconcile_fn, _services

    log.info("asgi.startup", event="lifespan_startup")

    try:
        settings = AppSettings()
    except Exception as e:
        error_msg = f"Configuration error: {e}"
        _error_message = error_msg
        log.error("asgi.startup_error", error=error_msg)
        raise

    configure_structlog(settings.log_level)
    domain = settings.domain.to_descriptor()

    log.info(
        "asgi.startup_config",
        version=__version__,
        log_level=settings.log_level,
        chain_id=domain.chain_id,
        verifying_contract=domain.verifying_contract,
        cron=settings.reconciler.cron,
    )

    try:
        ensure_schema(settings.database.get_dsn())
        credit_store, journal, ledger = _create_adapters(settings, domain)
        if settings.ledger.verify_domain_on_startup:
            check = verify_domain(domain, ledger)
            if check.is_failure():
                raise RuntimeError(str(check.error()))

        _services = Services(
            domain=domain,
            credit_store=credit_store,
            journal=journal,
            ledger=ledger,
            issuance=settings.issuance,
        )
        _reconcile_fn = partial(
            reconcile, journal=journal, credit_store=credit_store, ledger=ledger
        )
        scheduler = create_scheduler(
            job_fn=_reconcile_fn,
            cron=settings.reconciler.cron,
            run_on_startup=settings.reconciler.run_on_startup,
        )
    except Exception as e:
        error_msg = f"Failed to initialize adapters/scheduler: {e}"
        _error_message = error_msg
        log.error("asgi.init_error", error=error_msg)
        raise

    def run_scheduler() -> None:
        """Run scheduler in background thread (blocking)."""
        global _scheduler_started, _error_message
        try:
            _scheduler_started = True
            log.info("asgi.scheduler_thread_started")
            scheduler.start()
        except KeyboardInterrupt:
            log.info("asgi.scheduler_interrupted")
        except Exception as e:
            error_msg = f"Scheduler error: {e}"
            _error_message = error_msg
            log.error("asgi.scheduler_error", error=error_msg)

    _scheduler_thread = threading.Thread(target=run_scheduler, daemon=True)
    _scheduler_thread.start()

    await asyncio.sleep(0.1)
    _scheduler_ready = True

    log.info("asgi.startup_complete")

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")

    try:
        scheduler.shutdown(wait=True)
        log.info("asgi.scheduler_shutdown_complete")
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))

    if _scheduler_thread and _scheduler_thread.is_alive():
        _scheduler_thread.join(timeout=5.0)
        if _scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=5.0)

    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="cert-relayer",
    description="Signature-authorized certificate issuance relayer",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies use the same error envelope as domain failures."""
    failure = FailureDescription(
        code=ErrorCode.VALIDATION_ERROR,
        message="; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}"
            for error in exc.errors()
        ),
    )
    return JSONResponse(status_code=400, content=ErrorResponse.from_failure(failure).to_dict())


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"status": "unavailable", "reason": "Services not initialized"},
    )


# ─────────────────────── Health checks ───────────────────────


@app.get("/health")
async def health() -> JSONResponse:
    """
    Kubernetes liveness check.

    Returns 200 when startup succeeded and the scheduler thread is alive,
    503 otherwise.
    """
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )

    if not _scheduler_thread or not _scheduler_thread.is_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "scheduler_running": True},
    )


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Kubernetes readiness check.

    202 while starting, 503 after a startup error, 200 once the services are
    wired and the scheduler is running.
    """
    if not _scheduler_ready or not _scheduler_started:
        return JSONResponse(
            status_code=202,
            content={"status": "starting", "scheduler_started": _scheduler_started},
        )

    if _error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": _error_message},
        )

    return JSONResponse(
        status_code=200,
        content={
            "status": "ready",
            "scheduler_running": _scheduler_thread is not None and _scheduler_thread.is_alive(),
        },
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    """Application metadata, including the signing domain in use."""
    domain = _services.domain if _services else None
    return {
        "name": "cert-relayer",
        "version": __version__,
        "chain_id": domain.chain_id if domain else None,
        "verifying_contract": domain.verifying_contract if domain else None,
        "scheduler_running": _scheduler_thread is not None and _scheduler_thread.is_alive(),
        "scheduler_started": _scheduler_started,
        "scheduler_ready": _scheduler_ready,
        "has_error": _error_message is not None,
    }


# ─────────────────────── Certificates ───────────────────────


def _prepared_body(prepared: PreparedIssuance) -> dict[str, Any]:
    return {
        "certificateData": record_message(prepared.record),
        "typedData": prepared.envelope,
        "digest": prepared.digest_hex,
        "domainSeparator": "0x" + prepared.domain_separator.hex(),
    }


def _issued_body(outcome: IssuanceOutcome) -> dict[str, Any]:
    attempt = outcome.attempt
    return {
        "certId": attempt.record.cert_id_hex,
        "txHash": attempt.handle.tx_hash if attempt.handle else None,
        "digest": "0x" + attempt.digest.hex(),
        "state": str(attempt.state),
        "alreadySubmitted": outcome.already_submitted,
        "settled": outcome.settled,
    }


def _certificate_body(certificate: OnChainCertificate) -> dict[str, Any]:
    now = int(time.time())
    return {
        "certId": certificate.record.cert_id_hex,
        "exists": True,
        "valid": certificate.valid,
        "expired": certificate.is_expired(now),
        "live": certificate.is_live(now),
        "certificate": record_message(certificate.record),
    }


@app.post("/certificates/prepare")
async def prepare_certificate(body: PrepareCertificateBody) -> JSONResponse:
    """
    Build the record and typed data a university must sign.

    Nothing is persisted: the returned certificateData travels back with the
    signature, and its digest is recomputed on submission.
    """
    services = _services
    if services is None:
        return _unavailable()

    def _prepare() -> Result[PreparedIssuance]:
        return IssuanceRequest.create(
            issuer=body.university_address,
            student_name=body.student_name,
            student_email=body.student_email,
            certificate_name=body.certificate_name,
            expiration_date=body.expiration_date,
            metadata_uri=body.metadata_uri,
        ).flat_map(
            lambda request: prepare_issuance(
                services.domain,
                request,
                services.credit_store,
                credits=services.issuance.credits_per_certificate,
            )
        ).flat_map(prepared_digest)

    result = await asyncio.to_thread(_prepare)
    return build_fastapi_response(result, serializer=_prepared_body)


@app.post("/certificates/issue")
async def issue(body: IssueCertificateBody) -> JSONResponse:
    """
    Verify the university's signature and relay the certificate on-chain.

    201 for a new submission, 200 when the same signed record was already
    submitted (the original transaction hash is returned).
    """
    services = _services
    if services is None:
        return _unavailable()

    data = body.certificate_data
    signature = body.signature if isinstance(body.signature, str) else body.signature.model_dump()

    def _issue() -> Result[IssuanceOutcome]:
        return (
            CertificateRecord.create(
                cert_id=data.cert_id,
                issuer=data.university,
                certificate_name=data.certificate_name,
                person_name_hash=data.person_name_hash,
                email_hash=data.email_hash,
                issue_date=data.issue_date,
                expiration_date=data.expiration_date,
                metadata_uri=data.metadata_uri,
            )
            .flat_map(
                lambda record: restore_attempt(
                    services.domain,
                    record,
                    max_age_seconds=services.issuance.max_signature_age_seconds,
                    clock_skew_seconds=services.issuance.clock_skew_seconds,
                )
            )
            .flat_map(
                lambda attempt: issue_certificate(
                    attempt,
                    signature,
                    services.credit_store,
                    services.journal,
                    services.ledger,
                    credits=services.issuance.credits_per_certificate,
                )
            )
        )

    result = await asyncio.to_thread(_issue)
    status = 200 if result.is_success() and result.value().already_submitted else 201
    return build_fastapi_response(result, success_status=status, serializer=_issued_body)


@app.get("/certificates/{cert_id}")
async def get_certificate(cert_id: str) -> JSONResponse:
    """On-chain lookup; 404 when the certId was never issued."""
    services = _services
    if services is None:
        return _unavailable()
    result = await asyncio.to_thread(verify_certificate, cert_id, services.ledger)
    return build_fastapi_response(result, serializer=_certificate_body)


# ─────────────────────── Credits ───────────────────────


@app.post("/credits/claim")
async def claim_credits(body: ClaimCreditsBody) -> JSONResponse:
    """One-time free credit grant; 409 when already claimed."""
    services = _services
    if services is None:
        return _unavailable()
    amount = services.issuance.free_credit_grant
    result = await asyncio.to_thread(
        claim_free_credits,
        body.university_address,
        services.credit_store,
        services.ledger,
        amount,
    )
    return build_fastapi_response(
        result,
        serializer=lambda balance: {
            "universityAddress": body.university_address,
            "granted": amount,
            "availableCredits": balance,
        },
    )


# ─────────────────────── Reconciliation ───────────────────────


@app.post("/trigger")
async def trigger() -> JSONResponse:
    """
    Run reconciliation now instead of waiting for the scheduler.

    Returns 200 with the summary counts on success, 500 on failure and 503
    when the job is not initialized yet.
    """
    if _reconcile_fn is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "reason": "Reconciler not initialized"},
        )

    log.info("trigger.manual_start", source="REST")

    try:
        result = await asyncio.to_thread(_reconcile_fn)
    except Exception as e:
        log.error("trigger.exception", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": str(e)},
        )

    if result.is_success():
        summary = asdict(result.value())
        log.info("trigger.completed", **summary)
        return JSONResponse(status_code=200, content={"status": "success", **summary})

    failure = result.error()
    log.error("trigger.reconcile_failed", failure=str(failure))
    return JSONResponse(
        status_code=500,
        content={
            "status": "failed",
            "error_code": failure.code.value,
            "message": failure.message,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cert_relayer.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )

"""
Application entry point — wires dependencies and starts the reconciler.

Composition root: creates concrete adapters, injects them into the
pipeline, and hands the reconciliation job to the scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Create concrete adapter instances (credit store, journal, ledger)
  4. Check the configured signing domain against the deployed contract
  5. Create and start the scheduler
"""

from __future__ import annotations

import logging
import sys
from functools import partial

import structlog

from cert_relayer.adapters.ledger import Web3LedgerGateway
from cert_relayer.adapters.repository import (
    PsycopgCreditStore,
    PsycopgIssuanceJournal,
    ensure_schema,
)
from cert_relayer.config import AppSettings
from cert_relayer.domain.models import DomainDescriptor
from cert_relayer.pipeline import reconcile, verify_domain
from cert_relayer.scheduler import create_scheduler


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Security events (`security.*`) are emitted at WARNING so they survive
    any production log level.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_Adapters = tuple[PsycopgCreditStore, PsycopgIssuanceJournal, Web3LedgerGateway]


def _create_adapters(settings: AppSettings, domain: DomainDescriptor) -> _Adapters:
    """Instantiate the credit store, the issuance journal and the ledger gateway."""
    dsn = settings.database.get_dsn()
    credit_store = PsycopgCreditStore(dsn=dsn)
    journal = PsycopgIssuanceJournal(dsn=dsn)
    ledger = Web3LedgerGateway.connect(
        rpc_url=settings.ledger.rpc_url,
        domain=domain,
        relayer_private_key=settings.ledger.relayer_private_key.get_secret_value(),
        credit_token_address=settings.ledger.credit_token_address,
        timeout=settings.http_timeout_seconds,
        receipt_timeout=settings.ledger.receipt_timeout_seconds,
    )
    return credit_store, journal, ledger


def main() -> None:
    """Wire dependencies and launch the scheduled reconciliation."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    domain = settings.domain.to_descriptor()
    log.info(
        "app.starting",
        version="0.1.0",
        log_level=settings.log_level,
        chain_id=domain.chain_id,
        verifying_contract=domain.verifying_contract,
        cron=settings.reconciler.cron,
    )

    ensure_schema(settings.database.get_dsn())
    credit_store, journal, ledger = _create_adapters(settings, domain)

    if settings.ledger.verify_domain_on_startup:
        check = verify_domain(domain, ledger)
        if check.is_failure():
            log.error("app.domain_check_failed", failure=str(check.error()))
            sys.exit(1)
        log.info("app.domain_verified", domain_separator="0x" + check.value().hex())

    job_fn = partial(reconcile, journal=journal, credit_store=credit_store, ledger=ledger)

    scheduler = create_scheduler(
        job_fn=job_fn,
        cron=settings.reconciler.cron,
        run_on_startup=settings.reconciler.run_on_startup,
    )

    log.info("app.scheduler_starting", cron=settings.reconciler.cron)

    try:
        scheduler.start()
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")
    except SystemExit:
        log.info("app.shutdown", reason="signal received")
        raise
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

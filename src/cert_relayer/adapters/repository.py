"""
PostgreSQL adapters — issuer credit and the issuance journal.

Adapter layer — implements the CreditStore and IssuanceJournal ports using
psycopg (v3) with parameterized queries.

Atomicity is pushed into single statements rather than read-modify-write:
  debit       → UPDATE … SET credits = credits - n WHERE credits >= n RETURNING
  grant_once  → UPDATE … WHERE NOT has_claimed_free_credits RETURNING
  record      → INSERT … ON CONFLICT (digest) DO NOTHING

Two concurrent debits for the last credit therefore cannot both succeed, and
a digest is journaled at most once.

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import psycopg
import structlog
from eth_utils import to_checksum_address
from psycopg.rows import dict_row

from cert_relayer.domain.issuance import IssuanceReceipt, IssuanceState
from cert_relayer.domain.models import CertificateRecord, IssuerAccount
from cert_relayer.domain.signatures import SignatureTriple
from cert_relayer.railway import ErrorCode, Result

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS universities (
    wallet_address           TEXT PRIMARY KEY,
    name                     TEXT,
    available_credits        INTEGER NOT NULL DEFAULT 0 CHECK (available_credits >= 0),
    has_claimed_free_credits BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at               TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS issuance_journal (
    digest            BYTEA PRIMARY KEY,
    cert_id           BYTEA NOT NULL,
    university        TEXT NOT NULL,
    certificate_name  TEXT NOT NULL,
    person_name_hash  BYTEA NOT NULL,
    email_hash        BYTEA NOT NULL,
    issue_date        NUMERIC(78, 0) NOT NULL,
    expiration_date   NUMERIC(78, 0) NOT NULL,
    metadata_uri      TEXT NOT NULL,
    signature_v       SMALLINT NOT NULL,
    signature_r       BYTEA NOT NULL,
    signature_s       BYTEA NOT NULL,
    tx_hash           TEXT,
    state             TEXT NOT NULL,
    updated_at        TIMESTAMP WITH TIME ZONE NOT NULL
);

CREATE INDEX IF NOT EXISTS issuance_journal_state_idx ON issuance_journal (state);
"""

_SELECT_ACCOUNT = """
SELECT wallet_address, name, available_credits, has_claimed_free_credits
FROM universities
"""

_SELECT_RECEIPT = """
SELECT digest, cert_id, university, certificate_name, person_name_hash, email_hash,
       issue_date, expiration_date, metadata_uri, signature_v, signature_r, signature_s,
       tx_hash, state, updated_at
FROM issuance_journal
"""

_INSERT_RECEIPT = """
INSERT INTO issuance_journal (
    digest, cert_id, university, certificate_name, person_name_hash, email_hash,
    issue_date, expiration_date, metadata_uri, signature_v, signature_r, signature_s,
    tx_hash, state, updated_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_RESERVE = _INSERT_RECEIPT + "ON CONFLICT (digest) DO NOTHING"

# A submission fills in its own reservation; any other existing row wins.
_RECORD = (
    _INSERT_RECEIPT
    + "ON CONFLICT (digest) DO UPDATE"
    " SET tx_hash = EXCLUDED.tx_hash, state = EXCLUDED.state, updated_at = EXCLUDED.updated_at"
    " WHERE issuance_journal.state = 'VERIFIED' AND issuance_journal.tx_hash IS NULL"
)


def _key(address: str) -> str:
    """Addresses are stored lowercase; checksum casing is restored on read."""
    return address.lower()


def ensure_schema(dsn: str) -> None:
    """Create the tables if they do not exist yet."""
    with psycopg.connect(dsn) as conn:
        conn.execute(SCHEMA)
    log.info("repository.schema_ready")


def _to_account(row: dict[str, Any]) -> IssuerAccount:
    return IssuerAccount(
        address=to_checksum_address(row["wallet_address"]),
        available_credits=row["available_credits"],
        has_claimed_free_credits=row["has_claimed_free_credits"],
        name=row["name"],
    )


class PsycopgCreditStore:
    """
    Issuer accounts and their credit balance in the `universities` table.

    Implements the CreditStore port.
    All exceptions are caught at this adapter boundary via Result.from_computation().
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def lookup(self, address: str) -> Result[IssuerAccount]:
        return Result.from_computation(
            lambda: self._fetch_account(address),
            ErrorCode.DATABASE_ERROR,
            "Failed to look up issuer account",
        ).flat_map(
            lambda row: Result.success(_to_account(row))
            if row
            else Result.failure(ErrorCode.NOT_FOUND, f"No university registered for {address}")
        )

    def register(self, address: str, name: str | None = None, credits: int = 0) -> Result[IssuerAccount]:
        """Create (or rename) a university; existing credit is left untouched."""
        return Result.from_computation(
            lambda: self._upsert_account(address, name, credits),
            ErrorCode.DATABASE_ERROR,
            "Failed to register university",
        ).map(_to_account)

    def debit(self, address: str, amount: int = 1) -> Result[int]:
        return Result.from_computation(
            lambda: self._conditional_update(
                "UPDATE universities"
                " SET available_credits = available_credits - %s, updated_at = now()"
                " WHERE wallet_address = %s AND available_credits >= %s"
                " RETURNING available_credits",
                (amount, _key(address), amount),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to debit issuer credit",
        ).flat_map(
            lambda remaining: Result.success(remaining)
            if remaining is not None
            else Result.failure(
                ErrorCode.INSUFFICIENT_RESOURCE_ERROR,
                f"Issuer {address} has fewer than {amount} credit(s) or is not registered",
            )
        ).peek(lambda remaining: log.info("credits.debited", issuer=address, remaining=remaining))

    def grant_once(self, address: str, amount: int) -> Result[int]:
        return (
            Result.from_computation(
                lambda: self._conditional_update(
                    "UPDATE universities"
                    " SET available_credits = available_credits + %s,"
                    " has_claimed_free_credits = TRUE, updated_at = now()"
                    " WHERE wallet_address = %s AND NOT has_claimed_free_credits"
                    " RETURNING available_credits",
                    (amount, _key(address)),
                ),
                ErrorCode.DATABASE_ERROR,
                "Failed to grant free credits",
            )
            .flat_map(
                lambda balance: Result.success(balance)
                if balance is not None
                else self.lookup(address).flat_map(
                    lambda _: Result.failure(
                        ErrorCode.BUSINESS_RULE_ERROR,
                        f"Free credits were already claimed by {address}",
                    )
                )
            )
        )

    def accounts(self) -> Result[list[IssuerAccount]]:
        return Result.from_computation(
            self._fetch_accounts,
            ErrorCode.DATABASE_ERROR,
            "Failed to list issuer accounts",
        )

    def _fetch_account(self, address: str) -> dict[str, Any] | None:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(_SELECT_ACCOUNT + " WHERE wallet_address = %s", (_key(address),))
            return cur.fetchone()

    def _fetch_accounts(self) -> list[IssuerAccount]:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(_SELECT_ACCOUNT + " ORDER BY wallet_address")
            return [_to_account(row) for row in cur.fetchall()]

    def _upsert_account(self, address: str, name: str | None, credits: int) -> dict[str, Any]:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                "INSERT INTO universities (wallet_address, name, available_credits)"
                " VALUES (%s, %s, %s)"
                " ON CONFLICT (wallet_address) DO UPDATE SET name = EXCLUDED.name"
                " RETURNING wallet_address, name, available_credits, has_claimed_free_credits",
                (_key(address), name, credits),
            )
            row = cur.fetchone()
            if row is None:
                raise psycopg.DataError(f"University {address} was not returned by its upsert")
            log.info("repository.university_registered", issuer=address)
            return row

    def _conditional_update(self, sql: str, params: tuple[Any, ...]) -> int | None:
        """Run a single-row UPDATE … RETURNING; None when no row matched."""
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            return None if row is None else int(row[0])


def _to_receipt(row: dict[str, Any]) -> IssuanceReceipt:
    record = CertificateRecord(
        cert_id=bytes(row["cert_id"]),
        issuer=to_checksum_address(row["university"]),
        certificate_name=row["certificate_name"],
        person_name_hash=bytes(row["person_name_hash"]),
        email_hash=bytes(row["email_hash"]),
        issue_date=int(row["issue_date"]),
        expiration_date=int(row["expiration_date"]),
        metadata_uri=row["metadata_uri"],
    )
    return IssuanceReceipt(
        digest=bytes(row["digest"]),
        record=record,
        signature=SignatureTriple(
            v=row["signature_v"], r=bytes(row["signature_r"]), s=bytes(row["signature_s"])
        ),
        tx_hash=row["tx_hash"],
        state=IssuanceState(row["state"]),
        updated_at=row["updated_at"],
    )


def _receipt_params(receipt: IssuanceReceipt) -> tuple[Any, ...]:
    record = receipt.record
    return (
        receipt.digest,
        record.cert_id,
        _key(record.issuer),
        record.certificate_name,
        record.person_name_hash,
        record.email_hash,
        record.issue_date,
        record.expiration_date,
        record.metadata_uri,
        receipt.signature.v,
        receipt.signature.r,
        receipt.signature.s,
        receipt.tx_hash,
        str(receipt.state),
        receipt.updated_at,
    )


class PsycopgIssuanceJournal:
    """
    Journaled digests in the `issuance_journal` table.

    Implements the IssuanceJournal port. The primary key on `digest` is what
    makes resubmission of the same signed record idempotent: a relay first
    reserves the digest (VERIFIED, no tx_hash), and only the request that
    inserted the reservation goes on to submit.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def find(self, digest: bytes) -> Result[IssuanceReceipt]:
        return Result.from_computation(
            lambda: self._fetch_one(digest),
            ErrorCode.DATABASE_ERROR,
            "Failed to read issuance journal",
        ).flat_map(
            lambda receipt: Result.success(receipt)
            if receipt
            else Result.failure(ErrorCode.NOT_FOUND, f"Digest 0x{digest.hex()} was never submitted")
        )

    def reserve(self, receipt: IssuanceReceipt) -> Result[bool]:
        return Result.from_computation(
            lambda: self._execute(_RESERVE, _receipt_params(receipt)) == 1,
            ErrorCode.DATABASE_ERROR,
            "Failed to reserve digest",
        ).peek(
            lambda reserved: log.info(
                "journal.reserved" if reserved else "journal.already_reserved",
                digest=receipt.digest_hex,
            )
        )

    def release(self, digest: bytes) -> Result[int]:
        return Result.from_computation(
            lambda: self._execute(
                "DELETE FROM issuance_journal"
                " WHERE digest = %s AND state = 'VERIFIED' AND tx_hash IS NULL",
                (digest,),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to release digest reservation",
        ).peek(lambda rows: log.info("journal.released", digest=f"0x{digest.hex()}", rows=rows))

    def record(self, receipt: IssuanceReceipt) -> Result[IssuanceReceipt]:
        """Journal a submission; a digest already submitted returns the stored entry."""
        return Result.from_computation(
            lambda: self._upsert(receipt),
            ErrorCode.DATABASE_ERROR,
            "Failed to journal issuance",
        )

    def pending(self) -> Result[list[IssuanceReceipt]]:
        return Result.from_computation(
            lambda: self._fetch_by_state(IssuanceState.SUBMITTED),
            ErrorCode.DATABASE_ERROR,
            "Failed to list pending issuances",
        )

    def update_state(self, digest: bytes, state: IssuanceState) -> Result[int]:
        return Result.from_computation(
            lambda: self._execute(
                "UPDATE issuance_journal SET state = %s, updated_at = %s WHERE digest = %s",
                (str(state), datetime.now(UTC), digest),
            ),
            ErrorCode.DATABASE_ERROR,
            "Failed to update issuance state",
        ).flat_map(
            lambda rows: Result.success(rows)
            if rows
            else Result.failure(ErrorCode.NOT_FOUND, f"Digest 0x{digest.hex()} was never submitted")
        )

    def _fetch_one(self, digest: bytes) -> IssuanceReceipt | None:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(_SELECT_RECEIPT + " WHERE digest = %s", (digest,))
            row = cur.fetchone()
            return _to_receipt(row) if row else None

    def _fetch_by_state(self, state: IssuanceState) -> list[IssuanceReceipt]:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(_SELECT_RECEIPT + " WHERE state = %s ORDER BY updated_at", (str(state),))
            return [_to_receipt(row) for row in cur.fetchall()]

    def _upsert(self, receipt: IssuanceReceipt) -> IssuanceReceipt:
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor(
            row_factory=dict_row
        ) as cur:
            cur.execute(_RECORD, _receipt_params(receipt))
            if cur.rowcount == 1:
                log.info("journal.recorded", digest=receipt.digest_hex, tx_hash=receipt.tx_hash)
                return receipt
            cur.execute(_SELECT_RECEIPT + " WHERE digest = %s", (receipt.digest,))
            row = cur.fetchone()
            if row is None:
                raise psycopg.DataError(f"Digest {receipt.digest_hex} vanished during journaling")
            log.info("journal.already_recorded", digest=receipt.digest_hex)
            return _to_receipt(row)

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

"""
Ledger adapter — CertificateAuthority and credit token contracts via web3.py.

Adapter layer — implements the LedgerGateway port.

The relayer account (eth-account LocalAccount) pays gas and submits
`issueCertificateWithSignature`; the contract re-derives the EIP-712 digest
and runs ecrecover itself, so a record that verified here but was altered in
flight fails on-chain with an authorization revert.

Retry policy:
  - read calls (eth_call, receipts, balances) retry transient network errors
    via tenacity
  - transaction submission is never retried here; the caller decides, based
    on the classified ErrorCode, whether to resubmit and with which digest

All exceptions are captured into Result failures at this boundary.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from cert_relayer.domain.models import (
    CertificateRecord,
    ConfirmationStatus,
    DomainDescriptor,
    OnChainCertificate,
    TransactionHandle,
)
from cert_relayer.domain.signatures import SignatureTriple
from cert_relayer.domain.typed_data import issuance_digest
from cert_relayer.railway import ErrorCode, FailureDescription, Result

log = structlog.get_logger()


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[dict[str, Any]], mutability: str) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
        "stateMutability": mutability,
    }


_CERTIFICATE_COMPONENTS = [
    {"name": "certId", "type": "bytes32"},
    {"name": "university", "type": "address"},
    {"name": "certificateName", "type": "string"},
    {"name": "personNameHash", "type": "bytes32"},
    {"name": "emailHash", "type": "bytes32"},
    {"name": "issueDate", "type": "uint256"},
    {"name": "expirationDate", "type": "uint256"},
    {"name": "metadataURI", "type": "string"},
    {"name": "valid", "type": "bool"},
]

CERTIFICATE_AUTHORITY_ABI: list[dict[str, Any]] = [
    _fn(
        "issueCertificateWithSignature",
        [
            ("certId", "bytes32"),
            ("university", "address"),
            ("certificateName", "string"),
            ("personNameHash", "bytes32"),
            ("emailHash", "bytes32"),
            ("issueDate", "uint256"),
            ("expirationDate", "uint256"),
            ("metadataURI", "string"),
            ("v", "uint8"),
            ("r", "bytes32"),
            ("s", "bytes32"),
        ],
        [],
        "nonpayable",
    ),
    _fn(
        "getCertificate",
        [("certId", "bytes32")],
        [{"name": "", "type": "tuple", "components": _CERTIFICATE_COMPONENTS}],
        "view",
    ),
    _fn("isCertificateValid", [("certId", "bytes32")], [{"name": "", "type": "bool"}], "view"),
    _fn("getDomainSeparator", [], [{"name": "", "type": "bytes32"}], "view"),
]

CREDIT_TOKEN_ABI: list[dict[str, Any]] = [
    _fn("mintFor", [("to", "address"), ("amountInWholeTokens", "uint256")], [], "nonpayable"),
    _fn("burnFrom", [("from", "address"), ("amountInWholeTokens", "uint256")], [], "nonpayable"),
    _fn(
        "balanceOfInWholeTokens",
        [("account", "address")],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
]

# Node error fragments meaning "the same request may succeed later".
_TRANSIENT_MARKERS = (
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
    "transaction underpriced",
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
)
_AUTHORIZATION_MARKERS = ("signature", "signer", "unauthorized", "not authorized", "not a university")

_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=0.1, max=10),
    retry=retry_if_exception_type((OSError, TimeoutError)),
    reraise=True,
)


def classify_ledger_error(exc: BaseException) -> FailureDescription:
    """
    Map a web3 / node exception onto the relayer's error codes.

    Reverts are classified by reason string; node errors by message fragment.
    """
    message = str(exc)
    lowered = message.lower()
    if isinstance(exc, ContractLogicError) or "execution reverted" in lowered:
        if "already exists" in lowered:
            code = ErrorCode.DUPLICATE_ERROR
        elif "does not exist" in lowered:
            code = ErrorCode.NOT_FOUND
        elif any(marker in lowered for marker in _AUTHORIZATION_MARKERS):
            code = ErrorCode.AUTHORIZATION_ERROR
        else:
            code = ErrorCode.LEDGER_REJECTED
    elif isinstance(exc, (OSError, TimeoutError, TimeExhausted)) or any(
        marker in lowered for marker in _TRANSIENT_MARKERS
    ):
        code = ErrorCode.TRANSIENT_SUBMISSION_ERROR
    else:
        code = ErrorCode.EXTERNAL_SERVICE_ERROR
    return FailureDescription(code=code, message=f"Ledger call failed: {message}", exception=exc)


def _unwrap_certificate(raw: Sequence[Any]) -> Sequence[Any]:
    # Single-tuple outputs decode either as the struct itself or wrapped once.
    if len(raw) == 1 and isinstance(raw[0], (list, tuple)):
        return raw[0]
    return raw


class Web3LedgerGateway:
    """
    Implements the LedgerGateway port against deployed contracts.

    The domain descriptor is used to stamp each TransactionHandle with the
    digest the contract is expected to recompute.
    """

    def __init__(
        self,
        web3: Web3,
        domain: DomainDescriptor,
        relayer: LocalAccount,
        credit_token_address: str,
        receipt_timeout: int = 120,
    ) -> None:
        self._w3 = web3
        self._domain = domain
        self._relayer = relayer
        self._receipt_timeout = receipt_timeout
        self._authority = web3.eth.contract(
            address=Web3.to_checksum_address(domain.verifying_contract),
            abi=CERTIFICATE_AUTHORITY_ABI,
        )
        self._token = web3.eth.contract(
            address=Web3.to_checksum_address(credit_token_address),
            abi=CREDIT_TOKEN_ABI,
        )

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        domain: DomainDescriptor,
        relayer_private_key: str,
        credit_token_address: str,
        timeout: int = 60,
        receipt_timeout: int = 120,
    ) -> Web3LedgerGateway:
        web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        return cls(
            web3=web3,
            domain=domain,
            relayer=Account.from_key(relayer_private_key),
            credit_token_address=credit_token_address,
            receipt_timeout=receipt_timeout,
        )

    @property
    def relayer_address(self) -> str:
        return self._relayer.address

    # ─────────────────────── Writes ───────────────────────

    def submit(self, record: CertificateRecord, signature: SignatureTriple) -> Result[TransactionHandle]:
        """Send issueCertificateWithSignature; returns once the node accepts it."""
        call = self._authority.functions.issueCertificateWithSignature(
            record.cert_id,
            record.issuer,
            record.certificate_name,
            record.person_name_hash,
            record.email_hash,
            record.issue_date,
            record.expiration_date,
            record.metadata_uri,
            signature.ledger_v,
            signature.r,
            signature.s,
        )
        try:
            tx_hash = self._send(call)
        except Exception as e:
            return Result.failure_from(classify_ledger_error(e))
        log.info("ledger.submitted", cert_id=record.cert_id_hex, tx_hash=tx_hash)
        return Result.success(
            TransactionHandle(
                tx_hash=tx_hash,
                cert_id=record.cert_id,
                digest=issuance_digest(self._domain, record),
            )
        )

    def mint_tokens(self, address: str, amount: int) -> Result[str]:
        return self._send_and_wait(self._token.functions.mintFor(address, amount), "mintFor")

    def burn_tokens(self, address: str, amount: int) -> Result[str]:
        return self._send_and_wait(self._token.functions.burnFrom(address, amount), "burnFrom")

    def _send(self, call: ContractFunction) -> str:
        transaction = call.build_transaction(
            {
                "from": self._relayer.address,
                "nonce": self._w3.eth.get_transaction_count(self._relayer.address, "pending"),
                "chainId": self._domain.chain_id,
            }
        )
        signed = self._relayer.sign_transaction(transaction)
        return Web3.to_hex(self._w3.eth.send_raw_transaction(signed.raw_transaction))

    def _send_and_wait(self, call: ContractFunction, operation: str) -> Result[str]:
        """
        Token adjustments wait for their receipt so that the next balance read
        already reflects them; otherwise a reconciliation run could mint twice.
        """
        try:
            tx_hash = self._send(call)
            receipt = self._w3.eth.wait_for_transaction_receipt(
                HexBytes(tx_hash), timeout=self._receipt_timeout
            )
        except Exception as e:
            return Result.failure_from(classify_ledger_error(e))
        if receipt["status"] != 1:
            return Result.failure(ErrorCode.LEDGER_REJECTED, f"{operation} reverted in {tx_hash}")
        log.info("ledger.token_adjusted", operation=operation, tx_hash=tx_hash)
        return Result.success(tx_hash)

    # ─────────────────────── Reads ───────────────────────

    def confirmation(self, tx_hash: str) -> Result[ConfirmationStatus]:
        return self._read(lambda: self._receipt_status(tx_hash))

    def query(self, cert_id: bytes) -> Result[OnChainCertificate]:
        return self._read(lambda: self._fetch_certificate(cert_id)).flat_map(
            lambda certificate: Result.success(certificate)
            if certificate
            else Result.failure(ErrorCode.NOT_FOUND, f"Certificate 0x{cert_id.hex()} does not exist")
        )

    def domain_separator(self) -> Result[bytes]:
        return self._read(lambda: bytes(self._authority.functions.getDomainSeparator().call()))

    def token_balance(self, address: str) -> Result[int]:
        return self._read(
            lambda: int(self._token.functions.balanceOfInWholeTokens(address).call())
        )

    def _read(self, computation: Any) -> Result[Any]:
        try:
            return Result.success(_read_retry(computation)())
        except Exception as e:
            return Result.failure_from(classify_ledger_error(e))

    def _receipt_status(self, tx_hash: str) -> ConfirmationStatus:
        try:
            receipt = self._w3.eth.get_transaction_receipt(HexBytes(tx_hash))
        except TransactionNotFound:
            return ConfirmationStatus.PENDING
        return ConfirmationStatus.CONFIRMED if receipt["status"] == 1 else ConfirmationStatus.REVERTED

    def _fetch_certificate(self, cert_id: bytes) -> OnChainCertificate | None:
        try:
            raw = self._authority.functions.getCertificate(cert_id).call()
        except ContractLogicError as e:
            if "does not exist" in str(e).lower():
                return None
            raise
        fields = _unwrap_certificate(raw)
        stored_id = bytes(fields[0])
        if stored_id == b"\x00" * 32:
            return None
        return OnChainCertificate(
            record=CertificateRecord(
                cert_id=stored_id,
                issuer=fields[1],
                certificate_name=fields[2],
                person_name_hash=bytes(fields[3]),
                email_hash=bytes(fields[4]),
                issue_date=int(fields[5]),
                expiration_date=int(fields[6]),
                metadata_uri=fields[7],
            ),
            valid=bool(fields[8]),
        )

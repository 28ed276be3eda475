"""
Signature custody adapters — who holds the university key.

Adapter layer — implements the SignatureCustodian port.

  LocalKeyCustodian       → in-process key, eth-account sign_typed_data
                            (development, tests, tooling)
  HttpSignatureCustodian  → remote signing agent over HTTP (async httpx)

The relayer never needs the university key in production: the envelope is
handed to the key holder and only the 65-byte signature comes back.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from eth_account import Account
from eth_utils import to_bytes
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cert_relayer.domain.ports import SignatureDeclined

log = structlog.get_logger()

# Agent responses meaning the key holder refused, or the request went stale.
_DECLINE_STATUSES = frozenset({403, 409, 410})


class LocalKeyCustodian:
    """Signs envelopes with a private key held in memory."""

    def __init__(self, private_key: str | bytes) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, envelope: dict[str, Any]) -> bytes:
        signed = self._account.sign_typed_data(full_message=envelope)
        log.debug("custodian.signed_locally", signer=self._account.address)
        return bytes(signed.signature)


class HttpSignatureCustodian:
    """
    Ask a signing agent for an EIP-712 signature.

    POST {url} with {"typedData": envelope}; the agent answers
    {"signature": "0x…"} once the key holder has approved. A 403, 409 or 410
    answer means the request was declined. Only connection failures are
    retried: a read timeout may mean a human is still deciding.
    """

    def __init__(self, url: str, timeout: int = 300) -> None:
        self._url = url
        self._timeout = timeout

    async def sign_typed_data(self, envelope: dict[str, Any]) -> bytes:
        response = await self._post(envelope)
        if response.status_code in _DECLINE_STATUSES:
            reason = response.text or f"HTTP {response.status_code}"
            log.info("custodian.declined", status=response.status_code)
            raise SignatureDeclined(reason)
        response.raise_for_status()
        signature: str = response.json()["signature"]
        log.info("custodian.signed", url=self._url)
        return to_bytes(hexstr=signature)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=10),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _post(self, envelope: dict[str, Any]) -> httpx.Response:
        """HTTP call with retry — exceptions surface to request_signature."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, json={"typedData": envelope})

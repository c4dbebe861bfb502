"""HTTP client for the settlement-backed currency (diamond) ledger."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
from loguru import logger

from redeem_api.core.settings import Settings, settings


class CurrencyLedgerError(RuntimeError):
    """Raised when the ledger gateway rejects or fails a credit."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(slots=True)
class CurrencyCredit:
    """Result of a settled currency credit."""

    new_balance: int | None
    settlement_ref: str
    payload: Mapping[str, Any]


_RETRYABLE_STATUS = {408, 423, 425, 429, 500, 502, 503, 504}


class HttpCurrencyLedger:
    """Credits currency through the settlement gateway.

    The idempotency key is forwarded both in the body (as the on-chain receipt
    id) and as an ``Idempotency-Key`` header, so a retried credit is a no-op on
    the gateway side.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 20.0,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.6,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Currency ledger base URL must be configured")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(max_attempts, 1)
        self._retry_backoff_seconds = max(retry_backoff_seconds, 0.0)
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "HttpCurrencyLedger":
        return cls(
            base_url=config.currency_ledger_url,
            api_key=config.currency_ledger_api_key,
            timeout_seconds=config.currency_ledger_timeout_seconds,
            max_attempts=config.currency_ledger_max_attempts,
            http_client=http_client,
        )

    async def credit(
        self,
        address: str,
        amount: int,
        idempotency_key: str,
        note: str | None = None,
    ) -> CurrencyCredit:
        if amount <= 0:
            raise ValueError("Currency credit amount must be a positive integer")

        body = {
            "address": address,
            "amount": str(amount),
            "receiptId": idempotency_key,
            "note": note,
            "source": "redeem",
        }
        headers = {"Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout_seconds)
        owns_client = self._http_client is None
        try:
            last_error: CurrencyLedgerError | None = None
            for attempt in range(1, self._max_attempts + 1):
                try:
                    payload = await self._post_credit(client, body, headers)
                except CurrencyLedgerError as exc:
                    last_error = exc
                    if not exc.retryable or attempt >= self._max_attempts:
                        raise
                    delay = self._retry_backoff_seconds * attempt
                    logger.warning(
                        "Currency ledger credit retrying",
                        attempt=attempt + 1,
                        delay_seconds=delay,
                        reference=idempotency_key,
                        error=str(exc),
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue
                return self._parse_credit(payload, reference=idempotency_key)
            raise last_error or CurrencyLedgerError("Currency ledger credit failed")
        finally:
            if owns_client:
                await client.aclose()

    async def _post_credit(
        self,
        client: httpx.AsyncClient,
        body: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> Mapping[str, Any]:
        url = f"{self._base_url}/v1/ledger/credits"
        try:
            response = await client.post(url, json=body, headers=headers, timeout=self._timeout_seconds)
        except httpx.TimeoutException as exc:
            raise CurrencyLedgerError("Currency ledger request timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise CurrencyLedgerError(f"Currency ledger unreachable: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            raise CurrencyLedgerError(
                f"Currency ledger responded with status {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code in _RETRYABLE_STATUS,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CurrencyLedgerError("Currency ledger returned invalid JSON") from exc
        if not isinstance(payload, Mapping):
            raise CurrencyLedgerError("Currency ledger returned an unexpected payload")
        return payload

    @staticmethod
    def _parse_credit(payload: Mapping[str, Any], *, reference: str) -> CurrencyCredit:
        digest = payload.get("digest") or payload.get("settlementRef")
        if not isinstance(digest, str) or not digest:
            raise CurrencyLedgerError("Currency ledger response missing settlement digest")

        balance_raw = payload.get("balance", payload.get("newBalance"))
        try:
            balance = int(balance_raw) if balance_raw is not None else None
        except (TypeError, ValueError):
            balance = None

        logger.info("Currency ledger credit settled", reference=reference, digest=digest, balance=balance)
        return CurrencyCredit(new_balance=balance, settlement_ref=digest, payload=dict(payload))


__all__ = ["CurrencyCredit", "CurrencyLedgerError", "HttpCurrencyLedger"]

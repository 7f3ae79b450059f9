"""HTTP client for the payment processor's REST API.

Wraps the calls the settlement core needs behind an async interface:

- creating a destination charge (payment intent) that routes funds to the
  payee's connected account minus the platform's application fee;
- retrieving a balance transaction (directly or through its charge), the
  only trustworthy source of the fee the processor actually kept.

Every call is bounded by one overall deadline; transport failures and timeouts
surface as ``ProcessorError`` rather than hanging the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import settings
from app.core.errors import ConfigurationError, ProcessorError
from app.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

_TRANSIENT = (httpx.TimeoutException, httpx.ConnectError, asyncio.TimeoutError)


@dataclass(frozen=True)
class CreatedCharge:
    id: str
    client_secret: str
    status: str | None = None


def _flatten_form(data: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Encode nested dicts the way the processor expects: ``metadata[job_id]=...``."""
    pairs: dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.update(_flatten_form(value, name))
        elif isinstance(value, bool):
            pairs[name] = "true" if value else "false"
        else:
            pairs[name] = str(value)
    return pairs


def _error_message(resp: httpx.Response, fallback: str) -> str:
    """Extract the processor's user-facing message, if it sent one."""
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
        if isinstance(message, str) and message.strip():
            return message
    return fallback


class ProcessorClient:
    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._secret_key = secret_key if secret_key is not None else settings.processor_secret_key
        self._base = (base_url or settings.processor_api_base).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.processor_timeout_seconds
        self._retry = retry_policy or RetryPolicy(
            max_attempts=settings.charge_max_attempts,
            backoff=settings.charge_backoff_seconds,
        )
        self._transport = transport

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        if not self._secret_key:
            raise ConfigurationError("Payment service not configured")
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        form: dict[str, str] | None = None,
        headers: dict[str, str],
    ) -> httpx.Response:
        # httpx applies its timeout per phase; wait_for bounds the whole call.
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            return await asyncio.wait_for(
                client.request(method, f"{self._base}{path}", data=form, headers=headers),
                timeout=self._timeout,
            )

    async def create_destination_charge(
        self,
        *,
        amount_minor: int,
        currency: str,
        destination_account: str,
        application_fee_minor: int,
        metadata: dict[str, str],
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreatedCharge:
        """POST /payment_intents: create the charge and its platform/payee split.

        Retried per the retry policy on transport failures only; the
        idempotency key makes a retried create return the original intent.
        """
        form = _flatten_form(
            {
                "amount": amount_minor,
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "application_fee_amount": application_fee_minor,
                "transfer_data": {"destination": destination_account},
                "metadata": metadata,
                "description": description,
            }
        )
        headers = self._headers(idempotency_key)

        try:
            resp = await self._retry.run(
                lambda: self._request("POST", "/payment_intents", form=form, headers=headers),
                retry_on=_TRANSIENT,
                label="create payment intent",
            )
        except _TRANSIENT as exc:
            raise ProcessorError(
                "Payment processor is unavailable. Please try again.", detail=str(exc)
            ) from exc

        if resp.status_code >= 400:
            logger.error("Processor rejected charge: status=%d body=%s", resp.status_code, resp.text[:500])
            raise ProcessorError(
                _error_message(resp, "Failed to create payment"),
                status=resp.status_code,
                detail=resp.text,
            )

        body = resp.json()
        intent_id = body.get("id")
        client_secret = body.get("client_secret")
        if not intent_id or not client_secret:
            logger.error("Processor response missing id or client_secret: %s", body)
            raise ProcessorError("Invalid payment response from processor")

        logger.info("Payment intent created: %s", intent_id)
        return CreatedCharge(id=intent_id, client_secret=client_secret, status=body.get("status"))

    async def retrieve_balance_transaction_fee(self, balance_transaction_id: str) -> int | None:
        """GET /balance_transactions/{id}. The fee actually charged, in minor units."""
        headers = self._headers()
        try:
            resp = await self._request(
                "GET", f"/balance_transactions/{balance_transaction_id}", headers=headers
            )
        except _TRANSIENT as exc:
            raise ProcessorError(
                "Payment processor is unavailable.", detail=str(exc)
            ) from exc

        if resp.status_code >= 400:
            raise ProcessorError(
                _error_message(resp, "Failed to retrieve balance transaction"),
                status=resp.status_code,
                detail=resp.text,
            )

        fee = resp.json().get("fee")
        return int(round(float(fee))) if fee is not None else None

    async def retrieve_charge_fee(self, charge_id: str) -> int | None:
        """GET /charges/{id} with its balance transaction expanded.

        Used when an event names the charge but not its balance transaction.
        """
        headers = self._headers()
        try:
            resp = await self._request(
                "GET",
                f"/charges/{charge_id}?expand[]=balance_transaction",
                headers=headers,
            )
        except _TRANSIENT as exc:
            raise ProcessorError("Payment processor is unavailable.", detail=str(exc)) from exc

        if resp.status_code >= 400:
            raise ProcessorError(
                _error_message(resp, "Failed to retrieve charge"),
                status=resp.status_code,
                detail=resp.text,
            )

        balance_transaction = resp.json().get("balance_transaction")
        if isinstance(balance_transaction, dict):
            fee = balance_transaction.get("fee")
            return int(round(float(fee))) if fee is not None else None
        if isinstance(balance_transaction, str):
            return await self.retrieve_balance_transaction_fee(balance_transaction)
        return None

from __future__ import annotations

import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from counsel_core.errors import PaymentGatewayError, PaymentVerificationError
from counsel_core.ledger.pricing import PAYSTACK_CHANNELS
from counsel_core.payments.checkout import CheckoutRequest, PaymentVerification

_TIMEOUT_SECONDS = 30


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"Paystack {reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


class PaystackCheckout:
    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.paystack.co",
        callback_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 4,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
    ):
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._client = client
        self._max_attempts = max(1, max_attempts)
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds

    async def initialize(self, amount: int, reference: str, email: str) -> CheckoutRequest:
        body: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "channels": list(PAYSTACK_CHANNELS),
        }
        if self._callback_url:
            body["callback_url"] = self._callback_url
        data = await self._request("POST", "/transaction/initialize", json=body)
        return CheckoutRequest(
            reference=data.get("reference", reference),
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    async def verify(self, reference: str) -> PaymentVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return _verification_from_data(reference, data)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Accept": "application/json",
        }
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            wait=wait_exponential(multiplier=self._retry_min_seconds, min=self._retry_min_seconds, max=self._retry_max_seconds),
            stop=stop_after_attempt(self._max_attempts),
            before_sleep=_on_retry,
            reraise=True,
        )
        try:
            async with self._http() as client:
                async for attempt in retrying:
                    with attempt:
                        logger.debug(f"Paystack {method} {path}")
                        response = await client.request(method, f"{self._base_url}{path}", headers=headers, **kwargs)
        except httpx.TransportError as ex:
            raise PaymentGatewayError(f"Paystack unreachable: {ex}") from ex

        if response.status_code >= 400:
            raise PaymentGatewayError(
                f"HTTP {response.status_code} from Paystack: {_message_of(response)}",
                status_code=response.status_code,
            )
        payload = response.json()
        if not payload.get("status"):
            raise PaymentGatewayError(f"Paystack rejected request: {payload.get('message', 'unknown error')}")
        return payload.get("data") or {}

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
            yield client


def verify_webhook_signature(body: bytes, signature: str | None, secret_key: str) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def parse_webhook(body: bytes, signature: str | None, secret_key: str) -> PaymentVerification | None:
    """Decode a `charge.success` hook. Other event types return None."""
    if not verify_webhook_signature(body, signature, secret_key):
        raise PaymentVerificationError("Webhook signature mismatch")
    payload = json.loads(body)
    if payload.get("event") != "charge.success":
        return None
    data = payload.get("data") or {}
    return _verification_from_data(str(data.get("reference", "")), data)


def _verification_from_data(reference: str, data: dict[str, Any]) -> PaymentVerification:
    transaction_id = data.get("id")
    return PaymentVerification(
        reference=data.get("reference", reference),
        success=data.get("status") == "success",
        external_reference=str(transaction_id) if transaction_id is not None else None,
        amount=int(data["amount"]) if data.get("amount") is not None else None,
        channel=data.get("channel"),
        raw=data,
    )


def _message_of(response: httpx.Response) -> str:
    try:
        return str(response.json().get("message", response.text))
    except ValueError:
        return response.text

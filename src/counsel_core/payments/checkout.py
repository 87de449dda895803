from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode


@dataclass(frozen=True)
class CheckoutRequest:
    reference: str
    authorization_url: str
    access_code: str | None = None


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    success: bool
    external_reference: str | None = None
    amount: int | None = None
    channel: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentCheckout(Protocol):
    async def initialize(self, amount: int, reference: str, email: str) -> CheckoutRequest: ...

    async def verify(self, reference: str) -> PaymentVerification: ...


class ManualCheckout:
    """Redirect checkout confirmed by the user tapping "I've paid".

    `verify` trusts the user's report: it cannot see the processor, so the
    external reference is the payment reference itself.
    """

    def __init__(self, public_key: str, *, checkout_base_url: str = "https://checkout.paystack.com"):
        self._public_key = public_key
        self._checkout_base_url = checkout_base_url.rstrip("/")

    async def initialize(self, amount: int, reference: str, email: str) -> CheckoutRequest:
        query = urlencode({"email": email or "customer@example.com", "amount": amount, "ref": reference})
        return CheckoutRequest(
            reference=reference,
            authorization_url=f"{self._checkout_base_url}/{self._public_key}?{query}",
        )

    async def verify(self, reference: str) -> PaymentVerification:
        return PaymentVerification(reference=reference, success=True, external_reference=reference)

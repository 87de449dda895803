"""Amounts are integers in kobo (100 kobo = 1 naira) throughout."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass

from counsel_core.errors import LedgerInvariantError

SESSION_PRICE_KOBO = 500_000
COMMISSION_PERCENTAGE = 20
PAYSTACK_CHANNELS = ("card", "bank", "ussd", "bank_transfer")

_REFERENCE_ALPHABET = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class AmountSplit:
    amount: int
    commission: int
    payout: int


@dataclass(frozen=True)
class CreditPackage:
    credits: int
    price_naira: int
    popular: bool = False
    savings: str | None = None

    @property
    def price_kobo(self) -> int:
        return self.price_naira * 100


CREDIT_PACKAGES = (
    CreditPackage(credits=500, price_naira=1000),
    CreditPackage(credits=1000, price_naira=1800, popular=True, savings="10%"),
    CreditPackage(credits=2500, price_naira=4000, savings="20%"),
)


def split_amount(amount: int, commission_percentage: int = COMMISSION_PERCENTAGE) -> AmountSplit:
    if not 0 <= commission_percentage <= 100:
        raise LedgerInvariantError(f"Commission percentage out of range: {commission_percentage}")
    check_split(amount, 0, amount)
    commission = amount * commission_percentage // 100
    split = AmountSplit(amount=amount, commission=commission, payout=amount - commission)
    check_split(split.amount, split.commission, split.payout)
    return split


def check_split(amount: int, commission: int, payout: int) -> None:
    for name, value in (("amount", amount), ("commission", commission), ("payout", payout)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise LedgerInvariantError(f"{name} must be an integer number of kobo, got {value!r}")
        if value < 0:
            raise LedgerInvariantError(f"{name} must not be negative, got {value}")
    if commission + payout != amount:
        raise LedgerInvariantError(f"commission {commission} + payout {payout} != amount {amount}")


def generate_payment_reference(prefix: str = "CH") -> str:
    """`CH-<epoch ms>-<6 chars>`. Uniqueness is enforced by the store, not here."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def format_naira(amount_kobo: int) -> str:
    naira = amount_kobo / 100
    if naira.is_integer():
        return f"₦{int(naira):,}"
    return f"₦{naira:,.2f}"


def minutes_for_credits(credits: int) -> int:
    # 500 credits buy two hours of chat
    return credits * 120 // 500

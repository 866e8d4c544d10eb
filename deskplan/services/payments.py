from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: str | None = None
    message: str | None = None


class PaymentGateway(Protocol):
    async def authorize(
        self,
        *,
        tenant_id: str,
        payment_ref: str,
        amount: Decimal,
        currency: str,
    ) -> PaymentResult: ...


class AcceptingPaymentGateway:
    """Gateway used when no processor is wired in.

    The processor integration lives outside this service; this stand-in only
    rejects an empty reference so conversions still record something usable.
    """

    async def authorize(
        self,
        *,
        tenant_id: str,
        payment_ref: str,
        amount: Decimal,
        currency: str,
    ) -> PaymentResult:
        if not payment_ref.strip():
            return PaymentResult(success=False, message="Missing payment reference")
        return PaymentResult(success=True, reference=payment_ref)

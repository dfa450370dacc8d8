"""HTTP 402 "payment required" contract.

Insufficient balance is an expected outcome, returned as a value. The
router renders it as status 402 with a JSON body and a ``Payment-Required``
header; the caller tops up or retries with an external payment proof.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class PaymentRequired:
    price: Decimal
    pay_to: str
    currency: str = "USDC"
    chain: str = "base"
    description: str = ""
    resource: str = ""
    balance: Decimal | None = None

    def to_body(self) -> dict:
        body = {
            "error": "payment_required",
            "price": str(self.price),
            "currency": self.currency,
            "chain": self.chain,
            "pay_to": self.pay_to,
        }
        if self.balance is not None:
            body["balance"] = str(self.balance)
        if self.description:
            body["description"] = self.description
        if self.resource:
            body["resource"] = self.resource
        return body

    def to_header(self) -> str:
        """Serialize to the ``Payment-Required`` header value."""
        data = {
            "amount": str(self.price),
            "currency": self.currency,
            "chain": self.chain,
            "recipient": self.pay_to,
        }
        if self.description:
            data["description"] = self.description
        if self.resource:
            data["resource"] = self.resource
        return json.dumps(data)

    @classmethod
    def from_header(cls, header: str) -> PaymentRequired:
        data = json.loads(header)
        return cls(
            price=Decimal(data["amount"]),
            pay_to=data["recipient"],
            currency=data.get("currency", "USDC"),
            chain=data.get("chain", "base"),
            description=data.get("description", ""),
            resource=data.get("resource", ""),
        )

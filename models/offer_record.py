from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class OfferRecord:
    """Normalised view of one mortgage offer returned by the chat API.

    Attributes:
        bank_name: Display name of the bank.
        bank_logo: Optional URL of the medium-size bank logo.
        title: Offer title.
        credit_value: Total credit amount.
        monthly_installment: Monthly installment for equal installments.
        interest_rate: Nominal interest rate in percent.
    """

    bank_name: str
    title: str
    credit_value: float = 0.0
    monthly_installment: float = 0.0
    interest_rate: float = 0.0
    bank_logo: Optional[str] = None

    @classmethod
    def from_payload(cls, item: Dict[str, Any]) -> "OfferRecord":
        """Build a record from the nested ``offers.items[]`` structure."""
        bank = item.get("bank") or {}
        logo = bank.get("logo") or {}
        installment = (item.get("installment") or {}).get("equal") or {}
        return cls(
            bank_name=bank.get("name") or "Unknown bank",
            bank_logo=logo.get("medium") or None,
            title=item.get("title") or "Untitled offer",
            credit_value=_number((item.get("cost") or {}).get("creditValue")),
            monthly_installment=_number(installment.get("monthly")),
            interest_rate=_number((item.get("interest") or {}).get("value")),
        )

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "bankName": data["bank_name"],
            "bankLogo": data["bank_logo"],
            "title": data["title"],
            "creditValue": data["credit_value"],
            "monthlyInstallment": data["monthly_installment"],
            "interestRate": data["interest_rate"],
        }


def parse_offers(payload: Dict[str, Any]) -> List[OfferRecord]:
    """Return the offers contained in a ``mortgage-offers`` response."""
    offers = (payload or {}).get("offers") or {}
    items = offers.get("items") if isinstance(offers, dict) else offers
    return [OfferRecord.from_payload(item) for item in (items or []) if isinstance(item, dict)]

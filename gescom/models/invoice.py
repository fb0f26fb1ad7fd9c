from __future__ import annotations

from datetime import date, datetime
from typing import FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .client import ClientSnapshot
from .common import gen_id, utcnow
from .line_item import LineItem
from .outbox import PendingEffect

InvoiceStatus = Literal[
    "DRAFT",
    "SENT",
    "VIEWED_BY_CLIENT",
    "PARTIALLY_PAID",
    "PAID",
    "OVERDUE",
    "CANCELLED",
    "VOIDED",
]
PaymentMethod = Literal[
    "BANK_TRANSFER",
    "CREDIT_CARD",
    "CHECK",
    "CASH",
    "PAYPAL",
    "STRIPE",
    "SEPA_DIRECT_DEBIT",
    "OTHER",
]

ABSORBING_STATUSES: FrozenSet[str] = frozenset({"CANCELLED", "VOIDED"})


def derive_invoice_status(
    *,
    total_ttc_cent: int,
    amount_paid_cent: int,
    due_date: Optional[date],
    today: date,
    ever_sent: bool,
    viewed: bool = False,
    current: Optional[str] = None,
) -> str:
    """
    Statut d'une facture à partir de ses montants et de son échéance.
    Le statut issu des paiements l'emporte sur le retard ; CANCELLED et VOIDED
    ne sont jamais écrasés.
    """
    if current in ABSORBING_STATUSES:
        return current
    if total_ttc_cent > 0 and amount_paid_cent >= total_ttc_cent:
        return "PAID"
    if 0 < amount_paid_cent < total_ttc_cent:
        return "PARTIALLY_PAID"
    if not ever_sent:
        return "DRAFT"
    if due_date is not None and due_date < today:
        return "OVERDUE"
    return "VIEWED_BY_CLIENT" if viewed else "SENT"


class Payment(BaseModel):
    id: str = Field(default_factory=gen_id)
    amount_cent: int = Field(gt=0)
    paid_on: date
    method: PaymentMethod = "BANK_TRANSFER"
    reference: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)
    reversed: bool = False
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None


class Invoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    number: str
    client: ClientSnapshot
    status: InvoiceStatus = "DRAFT"

    issue_date: date
    due_date: date

    items: List[LineItem] = Field(default_factory=list)
    subtotal_before_discount_cent: int = 0
    total_discount_cent: int = 0
    subtotal_ht_cent: int = 0
    total_vat_cent: int = 0
    total_ttc_cent: int = 0
    currency: str = "EUR"

    amount_paid_cent: int = 0
    payments: List[Payment] = Field(default_factory=list)

    quote_id: Optional[str] = None
    delivery_note_ids: List[str] = Field(default_factory=list)

    pending_effects: List[PendingEffect] = Field(default_factory=list)

    terms: Optional[str] = None
    notes: Optional[str] = None
    void_reason: Optional[str] = None

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    version: int = 0

    @property
    def amount_due_cent(self) -> int:
        return max(0, self.total_ttc_cent - self.amount_paid_cent)

    @property
    def active_payments(self) -> List[Payment]:
        return [p for p in self.payments if not p.reversed]

    def derive_status(self, today: date) -> str:
        return derive_invoice_status(
            total_ttc_cent=self.total_ttc_cent,
            amount_paid_cent=self.amount_paid_cent,
            due_date=self.due_date,
            today=today,
            ever_sent=self.sent_at is not None,
            viewed=self.viewed_at is not None,
            current=self.status,
        )

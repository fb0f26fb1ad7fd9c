from __future__ import annotations

from datetime import date, datetime
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .client import ClientSnapshot
from .common import gen_id, utcnow
from .line_item import LineItem

QuoteStatus = Literal[
    "DRAFT",
    "SENT",
    "ACCEPTED",
    "REJECTED",
    "EXPIRED",
    "CONVERTED_TO_INVOICE",
    "CONVERTED_TO_DELIVERY",
]

CONVERTED_STATUSES: FrozenSet[str] = frozenset({"CONVERTED_TO_INVOICE", "CONVERTED_TO_DELIVERY"})

# transitions manuelles ; CONVERTED_* n'est atteint que par conversion
QUOTE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "DRAFT": frozenset({"SENT"}),
    "SENT": frozenset({"ACCEPTED", "REJECTED", "EXPIRED"}),
    "ACCEPTED": frozenset(),
    "REJECTED": frozenset(),
    "EXPIRED": frozenset(),
    "CONVERTED_TO_INVOICE": frozenset(),
    "CONVERTED_TO_DELIVERY": frozenset(),
}


class Quote(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    number: str
    client: ClientSnapshot
    status: QuoteStatus = "DRAFT"

    issue_date: date
    validity_date: date

    items: List[LineItem] = Field(default_factory=list)
    subtotal_before_discount_cent: int = 0
    total_discount_cent: int = 0
    subtotal_ht_cent: int = 0
    total_vat_cent: int = 0
    total_ttc_cent: int = 0
    currency: str = "EUR"

    converted_to_invoice_id: Optional[str] = None
    converted_to_delivery_note_id: Optional[str] = None

    terms: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None

    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_converted(self) -> bool:
        return bool(self.converted_to_invoice_id or self.converted_to_delivery_note_id) or self.status in CONVERTED_STATUSES

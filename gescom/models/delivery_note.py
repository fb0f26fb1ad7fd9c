from __future__ import annotations

from datetime import date, datetime
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .client import Address, ClientSnapshot
from .common import gen_id, utcnow

DeliveryStatus = Literal[
    "PENDING_PREPARATION",
    "READY_TO_SHIP",
    "SHIPPED",
    "PARTIALLY_DELIVERED",
    "DELIVERED",
    "CANCELLED",
    "RETURNED",
]

# statuts où la marchandise a quitté le stock
STOCK_OUT_STATUSES: FrozenSet[str] = frozenset({"SHIPPED", "PARTIALLY_DELIVERED", "DELIVERED"})
# statuts qui remettent en stock si la marchandise était sortie
STOCK_BACK_STATUSES: FrozenSet[str] = frozenset({"CANCELLED", "RETURNED"})
# quantités nulles tolérées
ZERO_QTY_STATUSES: FrozenSet[str] = frozenset({"PENDING_PREPARATION", "CANCELLED"})
NOT_INVOICEABLE: FrozenSet[str] = frozenset({"CANCELLED", "RETURNED"})

DELIVERY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "PENDING_PREPARATION": frozenset({"READY_TO_SHIP", "SHIPPED", "DELIVERED", "CANCELLED"}),
    "READY_TO_SHIP": frozenset({"PENDING_PREPARATION", "SHIPPED", "DELIVERED", "CANCELLED"}),
    "SHIPPED": frozenset({"PARTIALLY_DELIVERED", "DELIVERED", "RETURNED", "CANCELLED"}),
    "PARTIALLY_DELIVERED": frozenset({"DELIVERED", "RETURNED", "CANCELLED"}),
    "DELIVERED": frozenset({"RETURNED", "CANCELLED"}),
    "CANCELLED": frozenset(),
    "RETURNED": frozenset(),
}


class DeliveryNoteItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str
    product_ref: Optional[str] = None
    product_name: str
    description: Optional[str] = None
    is_service: bool = False
    quantity_ordered: float = Field(ge=0)
    quantity_delivered: float = Field(ge=0)
    # prix figés pour la facturation
    unit_price_ht_cent: int = Field(default=0, ge=0)
    vat_rate: float = Field(default=20.0, ge=0)
    discount_rate: float = Field(default=0.0, ge=0, le=100)

    @model_validator(mode="after")
    def _delivered_within_ordered(self) -> "DeliveryNoteItem":
        if self.quantity_delivered > self.quantity_ordered:
            raise ValueError(
                f"quantité livrée ({self.quantity_delivered}) supérieure à la quantité commandée ({self.quantity_ordered})"
            )
        return self


class DeliveryNote(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    number: str
    client: ClientSnapshot
    status: DeliveryStatus = "PENDING_PREPARATION"
    items: List[DeliveryNoteItem] = Field(default_factory=list)

    delivery_date: Optional[date] = None
    shipping_address: Optional[Address] = None
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None

    quote_id: Optional[str] = None
    invoice_id: Optional[str] = None

    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    version: int = 0

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import gen_id, utcnow


class Product(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    ref: str
    name: str
    description: Optional[str] = None
    unit: str = "unité"
    unit_price_ht_cent: int = Field(default=0, ge=0)
    vat_rate: float = Field(default=20.0, ge=0)
    active: bool = True

    # stock (ignoré si is_service)
    is_service: bool = False
    stock_quantity: float = Field(default=0.0, ge=0)
    critical_stock_threshold: float = Field(default=0.0, ge=0)
    version: int = 0


MovementReason = Literal[
    "DELIVERY_OUT", "DELIVERY_RETURN", "DELIVERY_CANCEL", "DELIVERY_REVERT", "MANUAL_ADJUSTMENT", "COMPENSATION",
]


class StockMovement(BaseModel):
    id: str = Field(default_factory=gen_id)
    product_id: str
    delta: float
    quantity_after: float
    reason: MovementReason
    document_type: Optional[str] = None
    document_id: Optional[str] = None
    note: Optional[str] = None
    actor_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)

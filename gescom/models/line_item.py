from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import round_cent


class LineItem(BaseModel):
    """Ligne de document commercial. Nom et prix sont figés à la création."""

    model_config = ConfigDict(extra="ignore")

    product_id: Optional[str] = None
    product_ref: Optional[str] = None
    product_name: str
    description: Optional[str] = None
    is_service: bool = False

    quantity: float = Field(gt=0)
    unit_price_ht_cent: int = Field(ge=0)
    vat_rate: float = Field(default=20.0, ge=0)
    discount_rate: float = Field(default=0.0, ge=0, le=100)

    # dérivés (compute_line_totals)
    total_before_discount_cent: int = 0
    discount_cent: int = 0
    total_ht_cent: int = 0
    total_vat_cent: int = 0
    total_ttc_cent: int = 0


class LineTotals(BaseModel):
    total_before_discount_cent: int = 0
    discount_cent: int = 0
    total_ht_cent: int = 0
    total_vat_cent: int = 0
    total_ttc_cent: int = 0


class DocumentTotals(BaseModel):
    subtotal_before_discount_cent: int = 0
    total_discount_cent: int = 0
    subtotal_ht_cent: int = 0
    total_vat_cent: int = 0
    total_ttc_cent: int = 0


def compute_line_totals(item: LineItem) -> LineTotals:
    """Chaque étape est arrondie au centime avant la suivante."""
    before = round_cent(Decimal(str(item.quantity)) * item.unit_price_ht_cent)
    discount = round_cent(Decimal(before) * Decimal(str(item.discount_rate)) / 100)
    ht = before - discount
    vat = round_cent(Decimal(ht) * Decimal(str(item.vat_rate)) / 100)
    return LineTotals(
        total_before_discount_cent=before,
        discount_cent=discount,
        total_ht_cent=ht,
        total_vat_cent=vat,
        total_ttc_cent=ht + vat,
    )


def with_totals(item: LineItem) -> LineItem:
    return item.model_copy(update=compute_line_totals(item).model_dump())


def recalc_totals(items: Iterable[LineItem]) -> Dict[str, Any]:
    """Lignes recalculées + totaux, prêts pour `model_copy(update=...)` d'un devis ou d'une facture."""
    lines = [with_totals(it) for it in items]
    return {"items": lines, **compute_document_totals(lines).model_dump()}


def compute_document_totals(items: Iterable[LineItem]) -> DocumentTotals:
    """Les totaux du document sont la somme des totaux de lignes (recalculés ici)."""
    totals = DocumentTotals()
    for item in items:
        t = compute_line_totals(item)
        totals.subtotal_before_discount_cent += t.total_before_discount_cent
        totals.total_discount_cent += t.discount_cent
        totals.subtotal_ht_cent += t.total_ht_cent
        totals.total_vat_cent += t.total_vat_cent
        totals.total_ttc_cent += t.total_ttc_cent
    return totals

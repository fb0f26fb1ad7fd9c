from __future__ import annotations

from typing import List, Optional, Sequence

from gescom.errors import NotFoundError, ValidationError
from gescom.models.commands import DeliveryItemInput, LineItemInput
from gescom.models.common import parse_model
from gescom.models.delivery_note import DeliveryNoteItem
from gescom.models.line_item import LineItem, with_totals
from gescom.models.product import Product
from gescom.storage.repo import Repository


class CatalogService:
    """
    Catalogue produits et services.
    - Fournit les lignes de documents avec nom/prix figés
    - Le stock n'est jamais modifié ici (voir StockLedger)
    """

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    # ----- CRUD ----- #

    def list_products(self, *, active: Optional[bool] = None, services: Optional[bool] = None) -> List[Product]:
        out = [Product.model_validate(d) for d in self.repo.list_all()]
        if active is not None:
            out = [p for p in out if p.active == active]
        if services is not None:
            out = [p for p in out if p.is_service == services]
        return sorted(out, key=lambda p: p.ref)

    def add_product(self, product: Product) -> Product:
        if self.repo.find_one(lambda d: d.get("ref") == product.ref):
            raise ValidationError(f"La référence {product.ref} existe déjà", error_code="DUPLICATE_PRODUCT_REF")
        self.repo.add(product)
        return product

    def update_product(self, product: Product) -> Product:
        """Met à jour la fiche ; la quantité en stock et la version restent celles du dépôt."""
        current = self.get(product.id)
        payload = product.model_dump(mode="json", exclude={"stock_quantity", "version"})
        row = self.repo.compare_and_set(current.id, current.version, payload)
        return Product.model_validate(row)

    def get_product(self, product_id: str) -> Optional[Product]:
        d = self.repo.get_by_id(product_id)
        return Product.model_validate(d) if d else None

    def get(self, product_id: str) -> Product:
        p = self.get_product(product_id)
        if p is None:
            raise NotFoundError("Produit", product_id)
        return p

    # ----- Lignes ----- #

    def build_line(self, line: LineItemInput) -> LineItem:
        if line.product_id:
            p = self.get(line.product_id)
            item = LineItem(
                product_id=p.id,
                product_ref=p.ref,
                product_name=line.product_name or p.name,
                description=line.description if line.description is not None else p.description,
                is_service=p.is_service,
                quantity=line.quantity,
                unit_price_ht_cent=line.unit_price_ht_cent if line.unit_price_ht_cent is not None else p.unit_price_ht_cent,
                vat_rate=line.vat_rate if line.vat_rate is not None else p.vat_rate,
                discount_rate=line.discount_rate,
            )
        else:
            item = LineItem(
                product_name=line.product_name,
                description=line.description,
                is_service=True,
                quantity=line.quantity,
                unit_price_ht_cent=line.unit_price_ht_cent,
                vat_rate=line.vat_rate if line.vat_rate is not None else 20.0,
                discount_rate=line.discount_rate,
            )
        return with_totals(item)

    def build_lines(self, lines: Sequence[LineItemInput]) -> List[LineItem]:
        return [self.build_line(ln) for ln in lines]

    def build_delivery_item(self, line: DeliveryItemInput) -> DeliveryNoteItem:
        p = self.get(line.product_id)
        return parse_model(DeliveryNoteItem, dict(
            product_id=p.id,
            product_ref=p.ref,
            product_name=p.name,
            description=line.description if line.description is not None else p.description,
            is_service=p.is_service,
            quantity_ordered=line.quantity_ordered,
            quantity_delivered=line.quantity_delivered,
            unit_price_ht_cent=line.unit_price_ht_cent if line.unit_price_ht_cent is not None else p.unit_price_ht_cent,
            vat_rate=line.vat_rate if line.vat_rate is not None else p.vat_rate,
            discount_rate=line.discount_rate,
        ))

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from gescom.errors import ConcurrencyError, InsufficientStockError, NotFoundError, ValidationError
from gescom.models.product import MovementReason, Product, StockMovement
from gescom.services.authz import STOCK_ADJUST, Actor, require
from gescom.services.notification_service import LoggingNotifier, Notifier, SafeNotifier
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)


class StockLedger:
    """
    Quantités disponibles par produit.
    Chaque mouvement est une écriture compare-and-set sur `version`, rejouée
    en cas de conflit ; les produits de type service sont ignorés.
    """

    def __init__(
        self,
        products_repo: Repository,
        movements_repo: Repository,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.products = products_repo
        self.movements = movements_repo
        self.notifier = SafeNotifier(notifier or LoggingNotifier())
        self.settings = settings or Settings()

    def _load(self, product_id: str) -> Product:
        d = self.products.get_by_id(product_id)
        if not d:
            raise NotFoundError("Produit", product_id)
        return Product.model_validate(d)

    # ----- Contrôles ----- #

    def check_available(self, demands: Iterable[Tuple[str, float]]) -> None:
        """Vérifie en une passe que chaque produit couvre la somme demandée (politique REJECT)."""
        if self.settings.stock_policy != "REJECT":
            return
        wanted: Dict[str, float] = defaultdict(float)
        for product_id, qty in demands:
            wanted[product_id] += qty
        for product_id, qty in wanted.items():
            product = self._load(product_id)
            if product.is_service or qty <= 0:
                continue
            if product.stock_quantity < qty:
                raise InsufficientStockError(product_id, product.stock_quantity, qty)

    # ----- Mouvements ----- #

    def apply(
        self,
        product_id: str,
        delta: float = 0.0,
        *,
        set_to: Optional[float] = None,
        reason: MovementReason,
        document_type: Optional[str] = None,
        document_id: Optional[str] = None,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Optional[Product]:
        """
        Applique `delta` au stock, ou fixe la quantité à `set_to` (inventaire).
        La quantité cible est recalculée à chaque tentative ; le mouvement
        enregistre le delta réellement appliqué. Renvoie le produit à jour,
        ou None pour un service.
        """
        for attempt in range(1, self.settings.stock_max_retries + 1):
            product = self._load(product_id)
            if product.is_service:
                logger.debug("Produit %s : service, pas de suivi de stock", product.ref)
                return None

            new_qty = round(product.stock_quantity + delta if set_to is None else set_to, 6)
            if new_qty < 0:
                if self.settings.stock_policy == "REJECT":
                    raise InsufficientStockError(product_id, product.stock_quantity, product.stock_quantity - new_qty)
                logger.warning(
                    "Stock de %s ramené à 0 (demande %s, disponible %s)",
                    product.ref, product.stock_quantity - new_qty, product.stock_quantity,
                )
                new_qty = 0.0

            try:
                row = self.products.compare_and_set(product.id, product.version, {"stock_quantity": new_qty})
            except ConcurrencyError:
                logger.info("Conflit sur le stock de %s, tentative %s", product.ref, attempt)
                continue

            updated = Product.model_validate(row)
            applied = round(new_qty - product.stock_quantity, 6)
            self.movements.add(StockMovement(
                product_id=product.id,
                delta=applied,
                quantity_after=updated.stock_quantity,
                reason=reason,
                document_type=document_type,
                document_id=document_id,
                note=note,
                actor_id=actor_id,
            ))
            logger.info("Stock %s : %+g -> %g (%s)", updated.ref, applied, updated.stock_quantity, reason)
            self.notifier.broadcast("stock_updated", {
                "product_id": updated.id,
                "stock_quantity": updated.stock_quantity,
                "delta": applied,
            })
            if applied < 0 and updated.stock_quantity <= updated.critical_stock_threshold:
                self.notifier.stock_alert(updated)
            return updated

        raise ConcurrencyError(
            f"Stock du produit {product_id} modifié en continu, abandon après {self.settings.stock_max_retries} tentatives",
            details={"product_id": product_id},
        )

    def adjust(
        self,
        product_id: str,
        *,
        actor: Actor,
        delta: Optional[float] = None,
        new_quantity: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Product:
        """Ajustement manuel (inventaire) : un delta ou une nouvelle quantité, jamais négatif."""
        require(actor, STOCK_ADJUST)
        if (delta is None) == (new_quantity is None):
            raise ValidationError("Indiquez soit delta, soit new_quantity")
        product = self._load(product_id)
        if product.is_service:
            raise ValidationError(f"{product.name} est un service : pas de stock à ajuster")
        if new_quantity is not None:
            if new_quantity < 0:
                raise ValidationError("La nouvelle quantité ne peut pas être négative")
            return self.apply(product_id, set_to=new_quantity, reason="MANUAL_ADJUSTMENT", note=reason, actor_id=actor.id)
        if product.stock_quantity + delta < 0:
            raise InsufficientStockError(product_id, product.stock_quantity, -delta)
        return self.apply(product_id, delta, reason="MANUAL_ADJUSTMENT", note=reason, actor_id=actor.id)

    def history(self, product_id: str) -> List[StockMovement]:
        rows = self.movements.find(lambda r: r.get("product_id") == product_id)
        return sorted((StockMovement.model_validate(r) for r in rows), key=lambda m: m.at)

    def document_balance(self, document_id: str) -> Dict[str, float]:
        """Somme des deltas appliqués par un document, par produit (négatif = sorti du stock)."""
        balance: Dict[str, float] = defaultdict(float)
        for row in self.movements.find(lambda r: r.get("document_id") == document_id):
            balance[row["product_id"]] += float(row.get("delta") or 0)
        return {pid: round(qty, 6) for pid, qty in balance.items() if round(qty, 6) != 0}

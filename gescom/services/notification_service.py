from __future__ import annotations

import logging
from typing import Any, Dict, List, Protocol, Tuple

from gescom.models.common import cent_to_eur
from gescom.models.invoice import Invoice
from gescom.models.product import Product

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def broadcast(self, event: str, data: Dict[str, Any]) -> None: ...

    def stock_alert(self, product: Product) -> None: ...

    def payment_received(self, invoice: Invoice, amount_cent: int) -> None: ...


class LoggingNotifier:
    """Notifier par défaut : journalise les événements."""

    def broadcast(self, event: str, data: Dict[str, Any]) -> None:
        logger.info("Événement %s : %s", event, data)

    def stock_alert(self, product: Product) -> None:
        logger.warning(
            "Stock critique pour %s (%s) : %s restant(s), seuil %s",
            product.name, product.ref, product.stock_quantity, product.critical_stock_threshold,
        )

    def payment_received(self, invoice: Invoice, amount_cent: int) -> None:
        logger.info("Paiement de %s reçu pour la facture %s", cent_to_eur(amount_cent), invoice.number)


class RecordingNotifier:
    """Garde les événements en mémoire (tests, diagnostics)."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def broadcast(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, dict(data)))

    def stock_alert(self, product: Product) -> None:
        self.events.append(("stock_alert", {"product_id": product.id, "stock_quantity": product.stock_quantity}))

    def payment_received(self, invoice: Invoice, amount_cent: int) -> None:
        self.events.append(("payment_received", {"invoice_id": invoice.id, "amount_cent": amount_cent}))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


class SafeNotifier:
    """Enveloppe un Notifier : une notification en échec ne fait jamais échouer l'opération."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def _call(self, name: str, *args: Any) -> None:
        try:
            getattr(self.inner, name)(*args)
        except Exception:
            logger.exception("Échec de la notification %s", name)

    def broadcast(self, event: str, data: Dict[str, Any]) -> None:
        self._call("broadcast", event, data)

    def stock_alert(self, product: Product) -> None:
        self._call("stock_alert", product)

    def payment_received(self, invoice: Invoice, amount_cent: int) -> None:
        self._call("payment_received", invoice, amount_cent)

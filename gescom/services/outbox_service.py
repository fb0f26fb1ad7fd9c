"""
Traitement des effets en attente (outbox embarquée dans les factures).

1. La transition d'une facture écrit, dans le même enregistrement, les effets à produire
2. `process` applique chaque effet (écriture comptable) dans l'ordre de création
3. Effet réussi → DONE ; échec → nouvelle tentative plus tard, FAILED après max_retries
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from gescom.errors import GescomError, NotFoundError
from gescom.models.accounting import JournalEntry
from gescom.models.common import utcnow
from gescom.models.invoice import Invoice
from gescom.models.outbox import PendingEffect, open_effects
from gescom.services.accounting_service import AccountingService
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)


class OutboxProcessor:
    def __init__(self, invoices_repo: Repository, accounting: AccountingService, settings: Optional[Settings] = None) -> None:
        self.invoices = invoices_repo
        self.accounting = accounting
        self.max_retries = (settings or Settings()).outbox_max_retries
        self.total_processed = 0
        self.total_failed = 0

    def _load(self, invoice_id: str) -> Invoice:
        d = self.invoices.get_by_id(invoice_id)
        if not d:
            raise NotFoundError("Facture", invoice_id)
        return Invoice.model_validate(d)

    def _handle(self, invoice: Invoice, effect: PendingEffect) -> JournalEntry:
        payload = effect.payload
        if effect.kind == "POST_SALE":
            return self.accounting.record_sale(invoice, source_key=effect.id)
        if effect.kind == "POST_PAYMENT":
            payment = next((p for p in invoice.payments if p.id == payload.get("payment_id")), None)
            if payment is None:
                raise NotFoundError("Paiement", payload.get("payment_id"))
            return self.accounting.record_payment(invoice, payment, source_key=effect.id)
        # REVERSE_PAYMENT, VOID_SALE : contre-passation de l'écriture d'un effet antérieur
        return self.accounting.reverse_posting(
            payload["original_effect_id"],
            reason=payload.get("reason") or effect.kind,
            source_key=effect.id,
        )

    def _save(self, invoice_id: str, effects: List[PendingEffect]) -> None:
        by_id: Dict[str, PendingEffect] = {e.id: e for e in effects}
        with self.invoices.transaction() as rows:
            for row in rows:
                if row.get("id") != invoice_id:
                    continue
                merged = []
                for raw in row.get("pending_effects") or []:
                    e = by_id.get(raw.get("id"))
                    merged.append(e.model_dump(mode="json") if e else raw)
                row["pending_effects"] = merged
                row["version"] = int(row.get("version") or 0) + 1
                break

    def process(self, invoice_id: str) -> List[PendingEffect]:
        """Applique les effets PENDING d'une facture ; s'arrête au premier échec pour garder l'ordre."""
        invoice = self._load(invoice_id)
        touched: List[PendingEffect] = []
        for effect in open_effects(invoice.pending_effects):
            effect.attempts += 1
            touched.append(effect)
            try:
                entry = self._handle(invoice, effect)
            except (GescomError, OSError) as exc:
                effect.last_error = str(exc)
                self.total_failed += 1
                if effect.attempts >= self.max_retries:
                    effect.status = "FAILED"
                    logger.error("Effet %s (%s) de la facture %s abandonné : %s", effect.id, effect.kind, invoice.number, exc)
                else:
                    logger.warning(
                        "Effet %s (%s) de la facture %s en échec (tentative %s/%s) : %s",
                        effect.id, effect.kind, invoice.number, effect.attempts, self.max_retries, exc,
                    )
                break
            effect.status = "DONE"
            effect.result_id = entry.id
            effect.last_error = None
            effect.processed_at = utcnow()
            self.total_processed += 1

        if touched:
            self._save(invoice.id, touched)
        return touched

    def pending_invoice_ids(self) -> List[str]:
        rows = self.invoices.find(
            lambda r: any(e.get("status") == "PENDING" for e in r.get("pending_effects") or [])
        )
        return [r["id"] for r in rows]

    def retry_pending(self) -> int:
        """Relance toutes les factures ayant des effets en attente ; renvoie le nombre d'effets aboutis."""
        done = 0
        for invoice_id in self.pending_invoice_ids():
            done += sum(1 for e in self.process(invoice_id) if e.status == "DONE")
        return done

    def requeue(self, invoice_id: str, effect_id: str) -> None:
        """Remet un effet FAILED en attente (après correction, ex. compte créé)."""
        invoice = self._load(invoice_id)
        effect = next((e for e in invoice.pending_effects if e.id == effect_id), None)
        if effect is None:
            raise NotFoundError("Effet", effect_id)
        effect.status = "PENDING"
        effect.attempts = 0
        self._save(invoice_id, [effect])

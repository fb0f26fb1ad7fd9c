from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from gescom.errors import ConcurrencyError, GescomError, ValidationError
from gescom.models.delivery_note import NOT_INVOICEABLE, DeliveryNote
from gescom.models.invoice import Invoice
from gescom.models.line_item import LineItem
from gescom.models.quote import Quote
from gescom.services.authz import Actor
from gescom.services.delivery_service import DeliveryNoteService
from gescom.services.invoice_service import InvoiceService
from gescom.services.quote_service import QuoteService

logger = logging.getLogger(__name__)


def _copy_lines(quote: Quote) -> List[LineItem]:
    # copie profonde : le document cible ne partage rien avec le devis
    return [it.model_copy(deep=True) for it in quote.items]


def _lines_from_notes(notes: Sequence[DeliveryNote]) -> List[LineItem]:
    lines: List[LineItem] = []
    for note in notes:
        for it in note.items:
            if it.quantity_delivered <= 0:
                continue
            lines.append(LineItem(
                product_id=it.product_id,
                product_ref=it.product_ref,
                product_name=it.product_name,
                description=f"{it.description or ''} (BL {note.number})".strip(),
                is_service=it.is_service,
                quantity=it.quantity_delivered,
                unit_price_ht_cent=it.unit_price_ht_cent,
                vat_rate=it.vat_rate,
                discount_rate=it.discount_rate,
            ))
    return lines


class WorkflowService:
    """
    Conversions entre documents : devis -> facture, devis -> bon de livraison,
    bons de livraison -> facture. Le document cible reprend les instantanés
    client et prix du document source.
    """

    def __init__(self, quotes: QuoteService, invoices: InvoiceService, deliveries: DeliveryNoteService) -> None:
        self.quotes = quotes
        self.invoices = invoices
        self.deliveries = deliveries

    def _claim_quote(self, quote: Quote, *, invoice: Optional[Invoice] = None, note: Optional[DeliveryNote] = None) -> Quote:
        """Marque le devis converti ; en cas d'échec, le document créé est retiré."""
        try:
            return self.quotes.mark_converted(
                quote,
                invoice_id=invoice.id if invoice else None,
                delivery_note_id=note.id if note else None,
            )
        except (ConcurrencyError, ValidationError):
            target = invoice or note
            logger.warning("Conversion du devis %s perdue, retrait de %s", quote.number, target.number)
            if invoice is not None:
                self.invoices.repo.delete(invoice.id)
            else:
                self.deliveries.repo.delete(note.id)
            raise

    # ----- Devis ----- #

    def quote_to_invoice(self, quote_id: str, *, actor: Actor) -> Tuple[Quote, Invoice]:
        quote = self.quotes.get(quote_id)
        self.quotes.ensure_convertible(quote)
        invoice = self.invoices.create_from_lines(
            quote.client.model_copy(deep=True),
            _copy_lines(quote),
            actor=actor,
            quote_id=quote.id,
            terms=quote.terms,
            notes=quote.customer_notes,
        )
        quote = self._claim_quote(quote, invoice=invoice)
        logger.info("Devis %s converti en facture %s", quote.number, invoice.number)
        return quote, invoice

    def quote_to_delivery_note(self, quote_id: str, *, actor: Actor) -> Tuple[Quote, DeliveryNote]:
        quote = self.quotes.get(quote_id)
        self.quotes.ensure_convertible(quote)
        note = self.deliveries.create_from_lines(quote.client.model_copy(deep=True), _copy_lines(quote), actor=actor, quote_id=quote.id)
        quote = self._claim_quote(quote, note=note)
        logger.info("Devis %s converti en bon de livraison %s", quote.number, note.number)
        return quote, note

    # ----- Bons de livraison ----- #

    def delivery_notes_to_invoice(self, note_ids: Sequence[str], *, actor: Actor) -> Tuple[Invoice, List[DeliveryNote]]:
        """Facture un ou plusieurs bons d'un même client, non encore facturés."""
        if not note_ids:
            raise ValidationError("Aucun bon de livraison sélectionné")
        if len(set(note_ids)) != len(note_ids):
            raise ValidationError("Bon de livraison sélectionné plusieurs fois")
        notes = [self.deliveries.get(nid) for nid in note_ids]
        client_ids = {n.client.client_id for n in notes}
        if len(client_ids) > 1:
            raise ValidationError("Les bons de livraison doivent appartenir au même client", error_code="MIXED_CLIENTS")
        for note in notes:
            if note.invoice_id:
                raise ValidationError(f"Bon {note.number} déjà facturé", error_code="DELIVERY_NOTE_ALREADY_INVOICED")
            if note.status in NOT_INVOICEABLE:
                raise ValidationError(f"Bon {note.number} en {note.status} : non facturable", error_code="DELIVERY_NOTE_NOT_INVOICEABLE")

        lines = _lines_from_notes(notes)
        if not lines:
            raise ValidationError("Aucune quantité livrée à facturer")
        invoice = self.invoices.create_from_lines(
            notes[0].client.model_copy(deep=True),
            lines,
            actor=actor,
            delivery_note_ids=[n.id for n in notes],
        )
        try:
            notes = self.deliveries.mark_invoiced(notes, invoice.id)
        except (GescomError, OSError):
            logger.warning("Rattachement des bons à %s en échec, retrait de la facture", invoice.number)
            self.deliveries.release_invoice(invoice.id)
            self.invoices.repo.delete(invoice.id)
            raise
        logger.info("Facture %s créée depuis %s bon(s) de livraison", invoice.number, len(notes))
        return invoice, notes

    # ----- Suppression ----- #

    def delete_invoice(self, invoice_id: str, *, actor: Actor) -> Invoice:
        """Supprime un brouillon ; le devis et les bons d'origine sont libérés par `InvoiceService.delete`."""
        return self.invoices.delete(invoice_id, actor=actor)

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from gescom.errors import IllegalTransitionError, NotFoundError, ValidationError
from gescom.models.client import ClientSnapshot
from gescom.models.commands import CreateInvoiceCommand, LineItemInput, RecordPaymentCommand
from gescom.models.common import cent_to_eur, parse_model, utcnow
from gescom.models.invoice import ABSORBING_STATUSES, Invoice, Payment
from gescom.models.line_item import LineItem, recalc_totals
from gescom.models.outbox import PendingEffect
from gescom.services.authz import Actor
from gescom.services.catalog_service import CatalogService
from gescom.services.client_service import ClientService
from gescom.services.delivery_service import DeliveryNoteService
from gescom.services.notification_service import LoggingNotifier, Notifier, SafeNotifier
from gescom.services.outbox_service import OutboxProcessor
from gescom.services.quote_service import QuoteService
from gescom.services.sequence_service import INVOICE, SequenceGenerator
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

# statuts d'une facture envoyée dont la vente est comptabilisée
POSTED_STATUSES = frozenset({"SENT", "VIEWED_BY_CLIENT", "PARTIALLY_PAID", "PAID", "OVERDUE"})
NO_PAYMENT_STATUSES = frozenset({"DRAFT", "PAID", "CANCELLED", "VOIDED"})


class InvoiceService:
    """
    Factures clients.
    Le statut n'est jamais saisi : il est recalculé (derive_invoice_status) après
    chaque paiement, envoi ou changement d'échéance. Les écritures comptables
    passent par des effets en attente traités par l'OutboxProcessor.
    """

    def __init__(
        self,
        repo: Repository,
        sequences: SequenceGenerator,
        clients: ClientService,
        catalog: CatalogService,
        outbox: OutboxProcessor,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        quotes: Optional[QuoteService] = None,
        deliveries: Optional[DeliveryNoteService] = None,
    ) -> None:
        self.repo = repo
        self.sequences = sequences
        self.clients = clients
        self.catalog = catalog
        self.outbox = outbox
        self.notifier = SafeNotifier(notifier or LoggingNotifier())
        self.settings = settings or Settings()
        # documents sources libérés à la suppression d'un brouillon
        self.quotes = quotes
        self.deliveries = deliveries

    # ----- Lecture ----- #

    def get(self, invoice_id: str) -> Invoice:
        d = self.repo.get_by_id(invoice_id)
        if not d:
            raise NotFoundError("Facture", invoice_id)
        return Invoice.model_validate(d)

    def list_invoices(self, *, status: Optional[str] = None, client_id: Optional[str] = None) -> List[Invoice]:
        rows = self.repo.find(
            lambda d: (status is None or d.get("status") == status)
            and (client_id is None or (d.get("client") or {}).get("client_id") == client_id)
        )
        return sorted((Invoice.model_validate(d) for d in rows), key=lambda i: i.number)

    def list_by_quote(self, quote_id: str) -> List[Invoice]:
        return [Invoice.model_validate(d) for d in self.repo.find(lambda d: d.get("quote_id") == quote_id)]

    # ----- Helpers ----- #

    def _save(self, invoice: Invoice) -> Invoice:
        invoice.updated_at = utcnow()
        row = self.repo.compare_and_set(invoice.id, invoice.version, invoice.model_dump(mode="json", exclude={"version"}))
        return Invoice.model_validate(row)

    def _derive(self, invoice: Invoice, today: Optional[date] = None) -> str:
        previous = invoice.status
        invoice.status = invoice.derive_status(today or date.today())
        if invoice.status == "PAID" and invoice.paid_at is None:
            invoice.paid_at = utcnow()
        elif invoice.status != "PAID":
            invoice.paid_at = None
        if invoice.status != previous:
            logger.info("Facture %s : %s -> %s", invoice.number, previous, invoice.status)
        return invoice.status

    def _save_and_process(self, invoice: Invoice) -> Invoice:
        saved = self._save(invoice)
        if any(e.status == "PENDING" for e in saved.pending_effects):
            self.outbox.process(saved.id)
            return self.get(saved.id)
        return saved

    @staticmethod
    def _ensure_not_absorbed(invoice: Invoice, action: str) -> None:
        if invoice.status in ABSORBING_STATUSES:
            raise IllegalTransitionError("facture", invoice.status, action, "facture annulée")

    # ----- Création ----- #

    def create_from_lines(
        self,
        client: ClientSnapshot,
        items: Sequence[LineItem],
        *,
        actor: Actor,
        quote_id: Optional[str] = None,
        delivery_note_ids: Optional[List[str]] = None,
        issue_date: Optional[date] = None,
        due_date: Optional[date] = None,
        terms: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        if not items:
            raise ValidationError("Une facture doit comporter au moins une ligne")
        issue = issue_date or date.today()
        due = due_date or issue + timedelta(days=self.settings.payment_delay_days)
        if due < issue:
            raise ValidationError("L'échéance précède la date d'émission")
        number = self.sequences.next_for(INVOICE, on=issue)
        invoice = Invoice(
            number=number,
            client=client,
            issue_date=issue,
            due_date=due,
            currency=self.settings.currency,
            quote_id=quote_id,
            delivery_note_ids=list(delivery_note_ids or []),
            terms=terms,
            notes=notes,
            created_by=actor.id,
            **recalc_totals(items),
        )
        self.repo.add(invoice)
        logger.info("Facture %s créée pour %s (%s TTC)", invoice.number, client.company_name, cent_to_eur(invoice.total_ttc_cent))
        return invoice

    def create(self, cmd: Union[CreateInvoiceCommand, Dict[str, Any]], *, actor: Actor) -> Invoice:
        cmd = parse_model(CreateInvoiceCommand, cmd)
        client = self.clients.snapshot(cmd.client_id)
        items = self.catalog.build_lines(cmd.items)
        return self.create_from_lines(
            client, items, actor=actor, issue_date=cmd.issue_date, due_date=cmd.due_date, terms=cmd.terms, notes=cmd.notes,
        )

    def update_items(self, invoice_id: str, items: Sequence[Union[LineItemInput, Dict[str, Any]]], *, actor: Actor) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice.status != "DRAFT":
            raise ValidationError(f"Facture {invoice.number} émise : lignes figées", error_code="INVOICE_LOCKED")
        lines = self.catalog.build_lines([parse_model(LineItemInput, it) for it in items])
        if not lines:
            raise ValidationError("Une facture doit comporter au moins une ligne")
        return self._save(invoice.model_copy(update=recalc_totals(lines)))

    def set_due_date(self, invoice_id: str, due_date: date, *, actor: Actor, today: Optional[date] = None) -> Invoice:
        invoice = self.get(invoice_id)
        self._ensure_not_absorbed(invoice, "DUE_DATE")
        if due_date < invoice.issue_date:
            raise ValidationError("L'échéance précède la date d'émission")
        invoice.due_date = due_date
        self._derive(invoice, today)
        return self._save(invoice)

    # ----- Cycle de vie ----- #

    def send(self, invoice_id: str, *, actor: Actor, today: Optional[date] = None) -> Invoice:
        """DRAFT -> SENT : la vente est comptabilisée (effet POST_SALE)."""
        invoice = self.get(invoice_id)
        if invoice.status != "DRAFT":
            raise IllegalTransitionError("facture", invoice.status, "SENT")
        if invoice.total_ttc_cent <= 0:
            raise ValidationError(f"Facture {invoice.number} à 0 : envoi impossible")
        invoice.sent_at = utcnow()
        self._derive(invoice, today)
        invoice.pending_effects.append(PendingEffect(kind="POST_SALE", payload={"actor_id": actor.id}))
        return self._save_and_process(invoice)

    def mark_viewed(self, invoice_id: str, *, today: Optional[date] = None) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice.sent_at is None:
            raise IllegalTransitionError("facture", invoice.status, "VIEWED_BY_CLIENT", "facture non envoyée")
        if invoice.viewed_at is None:
            invoice.viewed_at = utcnow()
        self._derive(invoice, today)
        return self._save(invoice)

    def refresh_overdue(self, today: Optional[date] = None) -> List[Invoice]:
        """Recalcule le statut des factures envoyées ; renvoie celles qui ont changé."""
        today = today or date.today()
        changed: List[Invoice] = []
        for invoice in self.list_invoices():
            if invoice.status in ABSORBING_STATUSES or invoice.sent_at is None:
                continue
            before = invoice.status
            if self._derive(invoice, today) != before:
                changed.append(self._save(invoice))
        return changed

    def cancel(self, invoice_id: str, *, actor: Actor, reason: Optional[str] = None) -> Invoice:
        """Annulation d'un brouillon : aucune écriture n'existe encore."""
        invoice = self.get(invoice_id)
        if invoice.status != "DRAFT":
            raise IllegalTransitionError("facture", invoice.status, "CANCELLED", "seul un brouillon s'annule, sinon void")
        invoice.status = "CANCELLED"
        invoice.cancelled_at = utcnow()
        invoice.void_reason = reason
        logger.info("Facture %s annulée par %s", invoice.number, actor.id)
        return self._save(invoice)

    def void(self, invoice_id: str, *, actor: Actor, reason: str) -> Invoice:
        """Annulation d'une facture émise non réglée : contre-passation de la vente."""
        invoice = self.get(invoice_id)
        if invoice.status not in POSTED_STATUSES:
            raise IllegalTransitionError("facture", invoice.status, "VOIDED")
        if invoice.amount_paid_cent > 0:
            raise ValidationError(
                f"Facture {invoice.number} partiellement réglée : annulez d'abord les paiements",
                error_code="INVOICE_HAS_PAYMENTS",
            )
        sale = next((e for e in invoice.pending_effects if e.kind == "POST_SALE"), None)
        invoice.status = "VOIDED"
        invoice.voided_at = utcnow()
        invoice.void_reason = reason
        if sale is not None:
            invoice.pending_effects.append(PendingEffect(
                kind="VOID_SALE",
                payload={"original_effect_id": sale.id, "reason": f"annulation facture {invoice.number} : {reason}"},
            ))
        logger.info("Facture %s annulée (VOIDED) par %s : %s", invoice.number, actor.id, reason)
        return self._save_and_process(invoice)

    def delete(self, invoice_id: str, *, actor: Actor) -> Invoice:
        """
        Suppression d'un brouillon sans paiement ; renvoie la facture supprimée.
        Le devis d'origine repasse en ACCEPTED et les bons de livraison
        redeviennent facturables.
        """
        invoice = self.get(invoice_id)
        if invoice.status != "DRAFT" or invoice.payments:
            raise ValidationError(
                f"Seul un brouillon sans paiement peut être supprimé ({invoice.number} est {invoice.status})",
                error_code="INVOICE_NOT_DELETABLE",
            )
        self.repo.delete(invoice_id)
        logger.info("Facture %s supprimée par %s", invoice.number, actor.id)
        if invoice.quote_id and self.quotes is not None:
            self.quotes.release_conversion(invoice.quote_id)
        if invoice.delivery_note_ids and self.deliveries is not None:
            self.deliveries.release_invoice(invoice.id)
        return invoice

    # ----- Paiements ----- #

    def record_payment(
        self,
        invoice_id: str,
        cmd: Union[RecordPaymentCommand, Dict[str, Any]],
        *,
        actor: Actor,
        today: Optional[date] = None,
    ) -> Invoice:
        cmd = parse_model(RecordPaymentCommand, cmd)
        invoice = self.get(invoice_id)
        if invoice.status in NO_PAYMENT_STATUSES:
            raise IllegalTransitionError("facture", invoice.status, "PAYMENT", "paiement impossible dans ce statut")
        if cmd.amount_cent > invoice.amount_due_cent:
            raise ValidationError(
                f"Paiement de {cent_to_eur(cmd.amount_cent)} supérieur au reste dû ({cent_to_eur(invoice.amount_due_cent)})",
                error_code="OVERPAYMENT",
                details={"amount_cent": cmd.amount_cent, "amount_due_cent": invoice.amount_due_cent},
            )
        payment = Payment(
            amount_cent=cmd.amount_cent,
            paid_on=cmd.paid_on or date.today(),
            method=cmd.method,
            reference=cmd.reference,
            notes=cmd.notes,
            recorded_by=actor.id,
        )
        invoice.payments.append(payment)
        invoice.amount_paid_cent += payment.amount_cent
        self._derive(invoice, today)
        invoice.pending_effects.append(PendingEffect(kind="POST_PAYMENT", payload={"payment_id": payment.id}))
        saved = self._save_and_process(invoice)
        logger.info("Paiement %s enregistré sur %s (%s)", cent_to_eur(payment.amount_cent), saved.number, saved.status)
        self.notifier.payment_received(saved, payment.amount_cent)
        return saved

    def reverse_payment(
        self,
        invoice_id: str,
        payment_id: str,
        *,
        actor: Actor,
        reason: str,
        today: Optional[date] = None,
    ) -> Invoice:
        """Annule un paiement (rejet de chèque, erreur de saisie) et contre-passe son écriture."""
        invoice = self.get(invoice_id)
        self._ensure_not_absorbed(invoice, "PAYMENT_REVERSAL")
        payment = next((p for p in invoice.payments if p.id == payment_id), None)
        if payment is None:
            raise NotFoundError("Paiement", payment_id)
        if payment.reversed:
            raise ValidationError("Paiement déjà annulé", error_code="PAYMENT_ALREADY_REVERSED")

        payment.reversed = True
        payment.reversed_at = utcnow()
        payment.reversal_reason = reason
        invoice.amount_paid_cent -= payment.amount_cent
        self._derive(invoice, today)

        posted = next(
            (e for e in invoice.pending_effects if e.kind == "POST_PAYMENT" and e.payload.get("payment_id") == payment_id),
            None,
        )
        if posted is not None:
            invoice.pending_effects.append(PendingEffect(
                kind="REVERSE_PAYMENT",
                payload={"original_effect_id": posted.id, "reason": reason},
            ))
        logger.info("Paiement %s annulé sur %s par %s : %s", payment_id, invoice.number, actor.id, reason)
        return self._save_and_process(invoice)

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from gescom.errors import NotFoundError, ValidationError
from gescom.models.accounting import Account, JournalEntry
from gescom.models.commands import JournalEntryCommand, JournalLineInput, PurchaseCommand
from gescom.models.common import parse_model
from gescom.models.invoice import Invoice, Payment
from gescom.services.authz import SYSTEM
from gescom.services.chart_service import ChartOfAccounts
from gescom.services.ledger_service import Ledger
from gescom.settings import Settings

logger = logging.getLogger(__name__)


def _line(account: Account, label: str, *, debit: int = 0, credit: int = 0) -> JournalLineInput:
    return JournalLineInput(account_id=account.id, description=label, debit_cent=debit, credit_cent=credit)


def _non_zero(lines: List[JournalLineInput]) -> List[JournalLineInput]:
    # une ligne à 0 (ex. TVA à 0 %) ne mouvemente rien
    return [ln for ln in lines if ln.debit_cent or ln.credit_cent]


class AccountingService:
    """
    Traduit un événement commercial en écriture équilibrée.
    Tous les comptes sont résolus avant la construction : un compte manquant
    interrompt l'opération sans rien écrire.
    """

    def __init__(self, ledger: Ledger, chart: ChartOfAccounts, settings: Optional[Settings] = None) -> None:
        self.ledger = ledger
        self.chart = chart
        self.settings = settings or Settings()

    def _account(self, number: str) -> Account:
        acc = self.chart.find_by_number(number)
        if acc is None:
            raise NotFoundError("Compte", number)
        return acc

    # ----- Ventes ----- #

    def build_sale_entry(self, invoice: Invoice, *, source_key: Optional[str] = None) -> JournalEntryCommand:
        """411 au débit (TTC) ; 707 (HT) et 44571 (TVA) au crédit."""
        if invoice.total_ttc_cent <= 0:
            raise ValidationError(f"Facture {invoice.number} à 0 : rien à comptabiliser", error_code="NOTHING_TO_POST")
        amap = self.settings.accounts
        receivable = self._account(amap.receivable)
        sales = self._account(amap.sales)
        vat = self._account(amap.vat_collected)

        label = f"Facture {invoice.number} - {invoice.client.company_name}"
        return JournalEntryCommand(
            entry_date=invoice.issue_date,
            description=label,
            transaction_type="SALE",
            related_document_type="INVOICE",
            related_document_id=invoice.id,
            lines=_non_zero([
                _line(receivable, label, debit=invoice.total_ttc_cent),
                _line(sales, f"Ventes {invoice.number}", credit=invoice.subtotal_ht_cent),
                _line(vat, f"TVA collectée {invoice.number}", credit=invoice.total_vat_cent),
            ]),
            source_key=source_key,
        )

    def record_sale(self, invoice: Invoice, *, source_key: Optional[str] = None) -> JournalEntry:
        entry = self.ledger.post(self.build_sale_entry(invoice, source_key=source_key), created_by=SYSTEM.id)
        logger.info("Vente comptabilisée : facture %s -> écriture %s", invoice.number, entry.number)
        return entry

    # ----- Encaissements ----- #

    def build_payment_entry(self, invoice: Invoice, payment: Payment, *, source_key: Optional[str] = None) -> JournalEntryCommand:
        """512 au débit, 411 au crédit, du montant encaissé."""
        amap = self.settings.accounts
        bank = self._account(amap.bank)
        receivable = self._account(amap.receivable)
        label = f"Règlement facture {invoice.number} ({payment.method})"
        return JournalEntryCommand(
            entry_date=payment.paid_on,
            description=label,
            transaction_type="PAYMENT_RECEIVED",
            related_document_type="INVOICE",
            related_document_id=invoice.id,
            lines=[
                _line(bank, label, debit=payment.amount_cent),
                _line(receivable, f"{invoice.client.company_name} - {invoice.number}", credit=payment.amount_cent),
            ],
            source_key=source_key,
        )

    def record_payment(self, invoice: Invoice, payment: Payment, *, source_key: Optional[str] = None) -> JournalEntry:
        entry = self.ledger.post(self.build_payment_entry(invoice, payment, source_key=source_key), created_by=SYSTEM.id)
        logger.info("Encaissement comptabilisé : facture %s -> écriture %s", invoice.number, entry.number)
        return entry

    # ----- Achats ----- #

    def build_purchase_entry(self, cmd: Union[PurchaseCommand, Dict[str, Any]]) -> JournalEntryCommand:
        """6xx (HT) et 44566 (TVA) au débit ; 401 (TTC) au crédit."""
        cmd = parse_model(PurchaseCommand, cmd)
        if cmd.total_ttc_cent <= 0:
            raise ValidationError(f"Achat {cmd.reference} à 0 : rien à comptabiliser", error_code="NOTHING_TO_POST")
        amap = self.settings.accounts
        charge = self._account(cmd.charge_account_number or amap.purchases)
        vat = self._account(amap.vat_deductible)
        supplier = self._account(amap.supplier_payable)
        label = f"Achat {cmd.reference} - {cmd.supplier_name}"
        return JournalEntryCommand(
            entry_date=cmd.invoice_date,
            description=label,
            transaction_type="PURCHASE",
            related_document_type="PURCHASE",
            related_document_id=cmd.purchase_id,
            lines=_non_zero([
                _line(charge, label, debit=cmd.total_ht_cent),
                _line(vat, f"TVA déductible {cmd.reference}", debit=cmd.total_vat_cent),
                _line(supplier, cmd.supplier_name, credit=cmd.total_ttc_cent),
            ]),
            source_key=f"purchase:{cmd.purchase_id}" if cmd.purchase_id else None,
        )

    def record_purchase(self, cmd: Union[PurchaseCommand, Dict[str, Any]]) -> JournalEntry:
        entry = self.ledger.post(self.build_purchase_entry(cmd), created_by=SYSTEM.id)
        logger.info("Achat comptabilisé : écriture %s", entry.number)
        return entry

    # ----- Annulations ----- #

    def reverse_posting(
        self,
        original_source_key: str,
        *,
        reason: str,
        entry_date: Optional[date] = None,
        source_key: Optional[str] = None,
    ) -> JournalEntry:
        """Contre-passe l'écriture automatique enregistrée sous `original_source_key`."""
        original = self.ledger.find_by_source_key(original_source_key)
        if original is None:
            raise NotFoundError("Écriture", original_source_key)
        return self.ledger.reverse(original.id, actor=SYSTEM, entry_date=entry_date, reason=reason, source_key=source_key)

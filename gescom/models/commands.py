"""
Commandes typées reçues par les services.

Chaque opération accepte soit une instance, soit un dict validé via
`parse_model` ; les champs inconnus sont refusés.
"""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .accounting import AccountType, NormalBalance, RelatedDocumentType, TransactionType
from .client import Address
from .invoice import PaymentMethod


class Command(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LineItemInput(Command):
    """Ligne saisie. Sans produit, le libellé et le prix sont obligatoires."""

    product_id: Optional[str] = None
    product_name: Optional[str] = None
    description: Optional[str] = None
    quantity: float = Field(gt=0)
    unit_price_ht_cent: Optional[int] = Field(default=None, ge=0)
    vat_rate: Optional[float] = Field(default=None, ge=0)
    discount_rate: float = Field(default=0.0, ge=0, le=100)

    @model_validator(mode="after")
    def _free_line_complete(self) -> "LineItemInput":
        if not self.product_id and (not self.product_name or self.unit_price_ht_cent is None):
            raise ValueError("ligne libre : product_name et unit_price_ht_cent requis")
        return self


class DeliveryItemInput(Command):
    product_id: str
    description: Optional[str] = None
    quantity_ordered: float = Field(ge=0)
    quantity_delivered: float = Field(default=0.0, ge=0)
    unit_price_ht_cent: Optional[int] = Field(default=None, ge=0)
    vat_rate: Optional[float] = Field(default=None, ge=0)
    discount_rate: float = Field(default=0.0, ge=0, le=100)


class CreateQuoteCommand(Command):
    client_id: str
    items: List[LineItemInput] = Field(default_factory=list)
    issue_date: Optional[date] = None
    validity_date: Optional[date] = None
    terms: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class CreateInvoiceCommand(Command):
    client_id: str
    items: List[LineItemInput] = Field(min_length=1)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    terms: Optional[str] = None
    notes: Optional[str] = None


class CreateDeliveryNoteCommand(Command):
    client_id: str
    items: List[DeliveryItemInput] = Field(min_length=1)
    delivery_date: Optional[date] = None
    shipping_address: Optional[Address] = None
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class RecordPaymentCommand(Command):
    amount_cent: int = Field(gt=0)
    paid_on: Optional[date] = None
    method: PaymentMethod = "BANK_TRANSFER"
    reference: Optional[str] = None
    notes: Optional[str] = None


class JournalLineInput(Command):
    account_number: Optional[str] = None
    account_id: Optional[str] = None
    description: Optional[str] = None
    debit_cent: int = Field(default=0, ge=0)
    credit_cent: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _has_account(self) -> "JournalLineInput":
        if not self.account_number and not self.account_id:
            raise ValueError("account_number ou account_id requis")
        return self


class JournalEntryCommand(Command):
    entry_date: date
    description: str = Field(min_length=1)
    transaction_type: TransactionType = "MANUAL_JOURNAL"
    related_document_type: Optional[RelatedDocumentType] = None
    related_document_id: Optional[str] = None
    lines: List[JournalLineInput]
    number: Optional[str] = None
    source_key: Optional[str] = None
    reverses_entry_id: Optional[str] = None


class PurchaseCommand(Command):
    """Facture fournisseur à comptabiliser."""

    supplier_name: str
    reference: str
    invoice_date: date
    total_ht_cent: int = Field(ge=0)
    total_vat_cent: int = Field(default=0, ge=0)
    total_ttc_cent: int = Field(ge=0)
    charge_account_number: Optional[str] = None
    purchase_id: Optional[str] = None

    @model_validator(mode="after")
    def _ttc_is_ht_plus_vat(self) -> "PurchaseCommand":
        if self.total_ht_cent + self.total_vat_cent != self.total_ttc_cent:
            raise ValueError("total_ttc_cent doit valoir total_ht_cent + total_vat_cent")
        return self


class CreateAccountCommand(Command):
    number: str = Field(min_length=1, max_length=20, pattern=r"^[0-9A-Za-z]+$")
    name: str = Field(min_length=1)
    type: AccountType
    normal_balance: Optional[NormalBalance] = None
    description: Optional[str] = None


class UpdateAccountCommand(Command):
    """Le numéro de compte n'est pas modifiable : il n'existe pas ici."""

    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[AccountType] = None
    normal_balance: Optional[NormalBalance] = None
    description: Optional[str] = None

from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import gen_id, utcnow

AccountType = Literal["ASSET", "LIABILITY", "EQUITY", "REVENUE", "EXPENSE", "OTHER"]
NormalBalance = Literal["DEBIT", "CREDIT"]
TransactionType = Literal[
    "SALE",
    "PURCHASE",
    "PAYMENT_RECEIVED",
    "PAYMENT_MADE",
    "MANUAL_JOURNAL",
    "STOCK_ADJUSTMENT",
    "VAT_DECLARATION",
    "SALARY",
    "OTHER",
]
RelatedDocumentType = Literal["INVOICE", "QUOTE", "DELIVERY_NOTE", "PURCHASE", "JOURNAL_ENTRY"]


class Account(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    number: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1)
    type: AccountType
    normal_balance: Optional[NormalBalance] = None
    description: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JournalLine(BaseModel):
    account_id: str
    # snapshot dénormalisé au moment de l'écriture
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    description: Optional[str] = None
    debit_cent: int = Field(default=0, ge=0)
    credit_cent: int = Field(default=0, ge=0)


class JournalEntry(BaseModel):
    """Écriture comptable. Jamais modifiée après enregistrement : les corrections passent par une contre-passation."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    number: Optional[str] = None
    entry_date: date
    description: str
    transaction_type: TransactionType = "OTHER"
    related_document_type: Optional[RelatedDocumentType] = None
    related_document_id: Optional[str] = None
    lines: List[JournalLine] = Field(default_factory=list)
    currency: str = "EUR"

    # idempotence des écritures automatiques
    source_key: Optional[str] = None
    reverses_entry_id: Optional[str] = None

    created_by: Optional[str] = None
    posted_at: datetime = Field(default_factory=utcnow)

    @property
    def total_debit_cent(self) -> int:
        return sum(ln.debit_cent for ln in self.lines)

    @property
    def total_credit_cent(self) -> int:
        return sum(ln.credit_cent for ln in self.lines)


class LedgerLine(BaseModel):
    """Ligne de grand livre : écriture + ligne + compte."""

    entry_id: str
    entry_number: Optional[str] = None
    entry_date: date
    entry_description: str
    transaction_type: TransactionType
    related_document_type: Optional[str] = None
    related_document_id: Optional[str] = None
    account_id: str
    account_number: str
    account_name: str
    account_type: AccountType
    description: Optional[str] = None
    debit_cent: int = 0
    credit_cent: int = 0
    running_balance_cent: int = 0


class EntryQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    transaction_type: Optional[TransactionType] = None
    account_id: Optional[str] = None
    related_document_id: Optional[str] = None
    search: Optional[str] = None


class EntryPage(BaseModel):
    items: List[JournalEntry] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


class AccountBalance(BaseModel):
    account_id: str
    number: str
    name: str
    type: AccountType
    normal_balance: Optional[NormalBalance] = None
    debit_cent: int = 0
    credit_cent: int = 0
    balance_cent: int = 0


class EquationCheck(BaseModel):
    assets_cent: int
    liabilities_and_equity_cent: int
    difference_cent: int
    balanced: bool


class BalanceSheet(BaseModel):
    as_of: date
    assets: List[AccountBalance] = Field(default_factory=list)
    liabilities: List[AccountBalance] = Field(default_factory=list)
    equity: List[AccountBalance] = Field(default_factory=list)
    total_assets_cent: int = 0
    total_liabilities_cent: int = 0
    total_equity_cent: int = 0
    total_revenue_cent: int = 0
    total_expense_cent: int = 0
    net_income_cent: int = 0
    check: EquationCheck


class TrialBalance(BaseModel):
    as_of: date
    rows: List[AccountBalance] = Field(default_factory=list)
    total_debit_cent: int = 0
    total_credit_cent: int = 0

    @property
    def balanced(self) -> bool:
        return self.total_debit_cent == self.total_credit_cent


class IncomeStatement(BaseModel):
    start_date: Optional[date] = None
    end_date: date
    revenue: List[AccountBalance] = Field(default_factory=list)
    expenses: List[AccountBalance] = Field(default_factory=list)
    total_revenue_cent: int = 0
    total_expense_cent: int = 0
    net_income_cent: int = 0


class GeneralLedger(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    lines: List[LedgerLine] = Field(default_factory=list)
    total_debit_cent: int = 0
    total_credit_cent: int = 0
    balances_cent: Dict[str, int] = Field(default_factory=dict)

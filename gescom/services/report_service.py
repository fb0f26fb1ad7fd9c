"""
États comptables calculés à partir du journal : grand livre, balance,
compte de résultat, bilan.

Lecture seule, sans isolation : un état calculé pendant des écritures
concurrentes est une photographie approximative à l'instant de la lecture.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from gescom.models.accounting import (
    Account,
    AccountBalance,
    BalanceSheet,
    EquationCheck,
    GeneralLedger,
    IncomeStatement,
    JournalEntry,
    TrialBalance,
)
from gescom.services.chart_service import ChartOfAccounts
from gescom.services.ledger_service import Ledger
from gescom.settings import Settings

logger = logging.getLogger(__name__)


def signed_balance(account: Account, debit_cent: int, credit_cent: int) -> int:
    """Solde débit - crédit, inversé pour les comptes à solde normal créditeur."""
    balance = debit_cent - credit_cent
    return -balance if account.normal_balance == "CREDIT" else balance


class ReportService:
    def __init__(self, ledger: Ledger, chart: ChartOfAccounts, settings: Optional[Settings] = None) -> None:
        self.ledger = ledger
        self.chart = chart
        self.settings = settings or Settings()

    def _totals(self, start: Optional[date], end: Optional[date]) -> Dict[str, Tuple[int, int]]:
        sums: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        entries: Iterable[JournalEntry] = self.ledger.all_entries()
        for e in entries:
            if start and e.entry_date < start:
                continue
            if end and e.entry_date > end:
                continue
            for ln in e.lines:
                sums[ln.account_id][0] += ln.debit_cent
                sums[ln.account_id][1] += ln.credit_cent
        return {k: (v[0], v[1]) for k, v in sums.items()}

    def _balances(self, accounts: Iterable[Account], totals: Dict[str, Tuple[int, int]]) -> List[AccountBalance]:
        out = []
        for acc in accounts:
            debit, credit = totals.get(acc.id, (0, 0))
            out.append(AccountBalance(
                account_id=acc.id,
                number=acc.number,
                name=acc.name,
                type=acc.type,
                normal_balance=acc.normal_balance,
                debit_cent=debit,
                credit_cent=credit,
                balance_cent=signed_balance(acc, debit, credit),
            ))
        return out

    # ----- Grand livre ----- #

    def general_ledger(
        self,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        account_id: Optional[str] = None,
        account_number: Optional[str] = None,
    ) -> GeneralLedger:
        """Lignes triées par (date, numéro d'écriture), avec solde progressif par compte."""
        lines = self.ledger.query_lines(
            start_date=start_date, end_date=end_date, account_id=account_id, account_number=account_number,
        )
        running: Dict[str, int] = defaultdict(int)
        total_debit = total_credit = 0
        for ln in lines:
            running[ln.account_id] += ln.debit_cent - ln.credit_cent
            ln.running_balance_cent = running[ln.account_id]
            total_debit += ln.debit_cent
            total_credit += ln.credit_cent
        return GeneralLedger(
            start_date=start_date,
            end_date=end_date,
            lines=lines,
            total_debit_cent=total_debit,
            total_credit_cent=total_credit,
            balances_cent=dict(running),
        )

    # ----- Balance ----- #

    def trial_balance(self, as_of: Optional[date] = None) -> TrialBalance:
        as_of = as_of or date.today()
        totals = self._totals(None, as_of)
        accounts = [a for a in self.chart.list() if a.id in totals]
        rows = self._balances(accounts, totals)
        return TrialBalance(
            as_of=as_of,
            rows=rows,
            total_debit_cent=sum(r.debit_cent for r in rows),
            total_credit_cent=sum(r.credit_cent for r in rows),
        )

    # ----- Compte de résultat ----- #

    def income_statement(self, *, start_date: Optional[date] = None, end_date: Optional[date] = None) -> IncomeStatement:
        end_date = end_date or date.today()
        totals = self._totals(start_date, end_date)
        revenue = self._balances(self.chart.list(type="REVENUE"), totals)
        expenses = self._balances(self.chart.list(type="EXPENSE"), totals)
        total_revenue = sum(r.balance_cent for r in revenue)
        total_expense = sum(r.balance_cent for r in expenses)
        return IncomeStatement(
            start_date=start_date,
            end_date=end_date,
            revenue=revenue,
            expenses=expenses,
            total_revenue_cent=total_revenue,
            total_expense_cent=total_expense,
            net_income_cent=total_revenue - total_expense,
        )

    # ----- Bilan ----- #

    def balance_sheet(self, as_of: Optional[date] = None) -> BalanceSheet:
        """
        Bilan à la date `as_of` (incluse) sur les comptes actifs.
        Le résultat (produits - charges) est ajouté aux capitaux propres ;
        l'équilibre actif = passif + capitaux propres est vérifié et l'écart exposé.
        """
        as_of = as_of or date.today()
        totals = self._totals(None, as_of)
        balances = self._balances(self.chart.list(active=True), totals)

        buckets: Dict[str, List[AccountBalance]] = defaultdict(list)
        for b in balances:
            buckets[b.type].append(b)

        total_assets = sum(b.balance_cent for b in buckets["ASSET"])
        total_liabilities = sum(b.balance_cent for b in buckets["LIABILITY"])
        total_equity_accounts = sum(b.balance_cent for b in buckets["EQUITY"])
        total_revenue = sum(b.balance_cent for b in buckets["REVENUE"])
        total_expense = sum(b.balance_cent for b in buckets["EXPENSE"])
        net_income = total_revenue - total_expense
        total_equity = total_equity_accounts + net_income

        liabilities_and_equity = total_liabilities + total_equity
        difference = total_assets - liabilities_and_equity
        balanced = abs(difference) / 100 < self.settings.balance_sheet_tolerance
        if not balanced:
            logger.warning("Bilan au %s déséquilibré : écart %.2f", as_of, difference / 100)

        return BalanceSheet(
            as_of=as_of,
            assets=buckets["ASSET"],
            liabilities=buckets["LIABILITY"],
            equity=buckets["EQUITY"],
            total_assets_cent=total_assets,
            total_liabilities_cent=total_liabilities,
            total_equity_cent=total_equity,
            total_revenue_cent=total_revenue,
            total_expense_cent=total_expense,
            net_income_cent=net_income,
            check=EquationCheck(
                assets_cent=total_assets,
                liabilities_and_equity_cent=liabilities_and_equity,
                difference_cent=difference,
                balanced=balanced,
            ),
        )

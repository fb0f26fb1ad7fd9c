from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from gescom.errors import NotFoundError, ValidationError
from gescom.models.accounting import EntryPage, EntryQuery, JournalEntry, JournalLine, LedgerLine
from gescom.models.commands import JournalEntryCommand, JournalLineInput
from gescom.models.common import parse_model
from gescom.services.authz import JOURNAL_MANUAL, Actor, require
from gescom.services.chart_service import ChartOfAccounts
from gescom.services.sequence_service import JOURNAL_ENTRY, SequenceGenerator
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def validate_lines(lines: Sequence[Union[JournalLine, JournalLineInput]], tolerance: float = 0.001) -> None:
    """Au moins 2 lignes, chaque ligne au débit OU au crédit, débit total = crédit total."""
    if len(lines) < 2:
        raise ValidationError(
            "Une écriture doit comporter au moins deux lignes",
            error_code="ENTRY_TOO_FEW_LINES",
            details={"lines": len(lines)},
        )
    for idx, ln in enumerate(lines):
        if ln.debit_cent < 0 or ln.credit_cent < 0:
            raise ValidationError(f"Ligne {idx + 1} : montant négatif", error_code="ENTRY_NEGATIVE_AMOUNT")
        if (ln.debit_cent > 0) == (ln.credit_cent > 0):
            raise ValidationError(
                f"Ligne {idx + 1} : un montant au débit ou au crédit, pas les deux ni aucun",
                error_code="ENTRY_LINE_SIDE",
                details={"line": idx + 1, "debit_cent": ln.debit_cent, "credit_cent": ln.credit_cent},
            )
    debit = sum(ln.debit_cent for ln in lines)
    credit = sum(ln.credit_cent for ln in lines)
    if abs(debit - credit) / 100 >= tolerance:
        raise ValidationError(
            f"Écriture déséquilibrée : débit {debit / 100:.2f}, crédit {credit / 100:.2f}",
            error_code="ENTRY_UNBALANCED",
            details={"debit_cent": debit, "credit_cent": credit, "difference_cent": debit - credit},
        )


def _entry_predicate(query: EntryQuery) -> Callable[[Row], bool]:
    """Filtre unique, partagé par la page et le comptage."""
    start = query.start_date.isoformat() if query.start_date else None
    end = query.end_date.isoformat() if query.end_date else None
    needle = (query.search or "").strip().lower()

    def keep(r: Row) -> bool:
        d = str(r.get("entry_date") or "")
        if start and d < start:
            return False
        if end and d > end:
            return False
        if query.transaction_type and r.get("transaction_type") != query.transaction_type:
            return False
        if query.related_document_id and r.get("related_document_id") != query.related_document_id:
            return False
        if query.account_id and not any(ln.get("account_id") == query.account_id for ln in r.get("lines") or []):
            return False
        if needle and needle not in str(r.get("description", "")).lower() and needle not in str(r.get("number", "")).lower():
            return False
        return True

    return keep


def _sort_key(entry: JournalEntry):
    return (entry.entry_date, entry.number or "")


class Ledger:
    """
    Journal des écritures, en ajout seul.
    Aucune modification ni suppression : on corrige par contre-passation (`reverse`).
    """

    def __init__(
        self,
        repo: Repository,
        chart: ChartOfAccounts,
        sequences: SequenceGenerator,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repo = repo
        self.chart = chart
        self.sequences = sequences
        self.settings = settings or Settings()

    # ----- Lecture ----- #

    def get(self, entry_id: str) -> JournalEntry:
        d = self.repo.get_by_id(entry_id)
        if not d:
            raise NotFoundError("Écriture", entry_id)
        return JournalEntry.model_validate(d)

    def find_by_number(self, number: str) -> Optional[JournalEntry]:
        d = self.repo.find_one(lambda r: r.get("number") == number)
        return JournalEntry.model_validate(d) if d else None

    def find_by_source_key(self, source_key: str) -> Optional[JournalEntry]:
        d = self.repo.find_one(lambda r: r.get("source_key") == source_key)
        return JournalEntry.model_validate(d) if d else None

    def reversal_of(self, entry_id: str) -> Optional[JournalEntry]:
        d = self.repo.find_one(lambda r: r.get("reverses_entry_id") == entry_id)
        return JournalEntry.model_validate(d) if d else None

    def all_entries(self) -> List[JournalEntry]:
        return sorted((JournalEntry.model_validate(d) for d in self.repo.list_all()), key=_sort_key)

    def list_entries(self, query: Union[EntryQuery, Dict[str, Any], None] = None, *, page: int = 1, page_size: int = 50) -> EntryPage:
        query = parse_model(EntryQuery, query or {})
        if page < 1 or page_size < 1:
            raise ValidationError("page et page_size doivent être positifs")
        matches = sorted((JournalEntry.model_validate(d) for d in self.repo.find(_entry_predicate(query))), key=_sort_key, reverse=True)
        start = (page - 1) * page_size
        return EntryPage(items=matches[start:start + page_size], total=len(matches), page=page, page_size=page_size)

    def count_entries(self, query: Union[EntryQuery, Dict[str, Any], None] = None) -> int:
        query = parse_model(EntryQuery, query or {})
        return len(self.repo.find(_entry_predicate(query)))

    def query_lines(
        self,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        account_id: Optional[str] = None,
        account_number: Optional[str] = None,
    ) -> List[LedgerLine]:
        """Lignes d'écritures jointes à leur compte, triées par (date, numéro). Bornes incluses."""
        if account_number and not account_id:
            account_id = self.chart.get_by_number(account_number).id
        accounts = {a.id: a for a in self.chart.list()}
        query = EntryQuery(start_date=start_date, end_date=end_date, account_id=account_id)
        entries = sorted((JournalEntry.model_validate(d) for d in self.repo.find(_entry_predicate(query))), key=_sort_key)

        out: List[LedgerLine] = []
        for e in entries:
            for ln in e.lines:
                if account_id and ln.account_id != account_id:
                    continue
                acc = accounts.get(ln.account_id)
                out.append(LedgerLine(
                    entry_id=e.id,
                    entry_number=e.number,
                    entry_date=e.entry_date,
                    entry_description=e.description,
                    transaction_type=e.transaction_type,
                    related_document_type=e.related_document_type,
                    related_document_id=e.related_document_id,
                    account_id=ln.account_id,
                    account_number=acc.number if acc else (ln.account_number or "?"),
                    account_name=acc.name if acc else (ln.account_name or "?"),
                    account_type=acc.type if acc else "OTHER",
                    description=ln.description,
                    debit_cent=ln.debit_cent,
                    credit_cent=ln.credit_cent,
                ))
        return out

    # ----- Écriture ----- #

    def _resolve_lines(self, lines: Sequence[JournalLineInput], *, allow_inactive: bool = False) -> List[JournalLine]:
        out: List[JournalLine] = []
        for ln in lines:
            acc = self.chart.find_by_id(ln.account_id) if ln.account_id else self.chart.find_by_number(ln.account_number or "")
            if acc is None:
                raise NotFoundError("Compte", ln.account_id or ln.account_number)
            if not acc.active and not allow_inactive:
                raise ValidationError(
                    f"Le compte {acc.number} est désactivé",
                    error_code="ACCOUNT_INACTIVE",
                    details={"account_id": acc.id, "number": acc.number},
                )
            out.append(JournalLine(
                account_id=acc.id,
                account_number=acc.number,
                account_name=acc.name,
                description=ln.description,
                debit_cent=ln.debit_cent,
                credit_cent=ln.credit_cent,
            ))
        return out

    def post(self, cmd: Union[JournalEntryCommand, Dict[str, Any]], *, created_by: Optional[str] = None) -> JournalEntry:
        """
        Enregistre une écriture équilibrée et la renvoie.
        Avec `source_key`, un second appel renvoie l'écriture déjà enregistrée.
        Le numéro est tiré après les contrôles de doublon. Seule la collision
        avec un numéro imposé (`cmd.number`) peut encore laisser un trou.
        """
        cmd = parse_model(JournalEntryCommand, cmd)
        if cmd.source_key:
            existing = self.find_by_source_key(cmd.source_key)
            if existing is not None:
                logger.info("Écriture %s déjà enregistrée pour %s", existing.number, cmd.source_key)
                return existing

        validate_lines(cmd.lines, self.settings.balance_tolerance)
        # une contre-passation peut viser un compte désactivé depuis
        lines = self._resolve_lines(cmd.lines, allow_inactive=bool(cmd.reverses_entry_id))
        validate_lines(lines, self.settings.balance_tolerance)

        if cmd.reverses_entry_id:
            self.get(cmd.reverses_entry_id)

        with self.repo.transaction() as rows:
            # contrôles avant de tirer un numéro : un rejet ici ne consomme pas la séquence
            for r in rows:
                if cmd.source_key and r.get("source_key") == cmd.source_key:
                    logger.info("Écriture %s enregistrée entre-temps pour %s", r.get("number"), cmd.source_key)
                    return JournalEntry.model_validate(r)
                if cmd.reverses_entry_id and r.get("reverses_entry_id") == cmd.reverses_entry_id:
                    raise ValidationError(
                        f"L'écriture {cmd.reverses_entry_id} a déjà été contre-passée",
                        error_code="ENTRY_ALREADY_REVERSED",
                        details={"entry_id": cmd.reverses_entry_id, "reversal_id": r.get("id")},
                    )
            number = cmd.number or self.sequences.next_for(JOURNAL_ENTRY, on=cmd.entry_date)
            if any(r.get("number") == number for r in rows):
                raise ValidationError(f"Le numéro d'écriture {number} existe déjà", error_code="DUPLICATE_ENTRY_NUMBER")
            entry = JournalEntry(
                number=number,
                entry_date=cmd.entry_date,
                description=cmd.description,
                transaction_type=cmd.transaction_type,
                related_document_type=cmd.related_document_type,
                related_document_id=cmd.related_document_id,
                lines=lines,
                currency=self.settings.currency,
                source_key=cmd.source_key,
                reverses_entry_id=cmd.reverses_entry_id,
                created_by=created_by,
            )
            rows.append(entry.model_dump(mode="json"))

        logger.info(
            "Écriture %s enregistrée (%s, %.2f)", entry.number, entry.transaction_type, entry.total_debit_cent / 100
        )
        return entry

    def create_manual(self, cmd: Union[JournalEntryCommand, Dict[str, Any]], *, actor: Actor) -> JournalEntry:
        require(actor, JOURNAL_MANUAL)
        cmd = parse_model(JournalEntryCommand, cmd)
        if cmd.reverses_entry_id:
            raise ValidationError("Utilisez reverse() pour contre-passer une écriture")
        return self.post(cmd, created_by=actor.id)

    def reverse(
        self,
        entry_id: str,
        *,
        actor: Actor,
        entry_date: Optional[date] = None,
        reason: Optional[str] = None,
        source_key: Optional[str] = None,
    ) -> JournalEntry:
        """Contre-passation : mêmes comptes, débit et crédit inversés. Une seule fois par écriture."""
        require(actor, JOURNAL_MANUAL)
        original = self.get(entry_id)
        if original.reverses_entry_id:
            raise ValidationError(
                f"{original.number} est déjà une contre-passation",
                error_code="ENTRY_IS_REVERSAL",
            )
        already = self.reversal_of(entry_id)
        if already is not None:
            if source_key and already.source_key == source_key:
                return already
            raise ValidationError(
                f"L'écriture {original.number} a déjà été contre-passée par {already.number}",
                error_code="ENTRY_ALREADY_REVERSED",
                details={"entry_id": entry_id, "reversal_id": already.id},
            )
        label = f"Contre-passation {original.number}"
        if reason:
            label = f"{label} : {reason}"
        cmd = JournalEntryCommand(
            entry_date=entry_date or date.today(),
            description=label,
            transaction_type=original.transaction_type,
            related_document_type=original.related_document_type,
            related_document_id=original.related_document_id,
            lines=[
                JournalLineInput(
                    account_id=ln.account_id,
                    description=ln.description,
                    debit_cent=ln.credit_cent,
                    credit_cent=ln.debit_cent,
                )
                for ln in original.lines
            ],
            source_key=source_key,
            reverses_entry_id=original.id,
        )
        return self.post(cmd, created_by=actor.id)

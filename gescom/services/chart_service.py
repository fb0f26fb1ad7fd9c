from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from gescom.errors import NotFoundError, ValidationError
from gescom.models.accounting import Account
from gescom.models.commands import CreateAccountCommand, UpdateAccountCommand
from gescom.models.common import parse_model, utcnow
from gescom.services.authz import ACCOUNTS_MANAGE, SYSTEM, Actor, require
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

# Plan comptable général, extrait utile à la gestion commerciale
DEFAULT_CHART: Tuple[Tuple[str, str, str, Optional[str]], ...] = (
    ("101000", "Capital", "EQUITY", "CREDIT"),
    ("120000", "Résultat de l'exercice", "EQUITY", "CREDIT"),
    ("401000", "Fournisseurs", "LIABILITY", "CREDIT"),
    ("411000", "Clients", "ASSET", "DEBIT"),
    ("445660", "TVA déductible sur ABS", "ASSET", "DEBIT"),
    ("445710", "TVA collectée", "LIABILITY", "CREDIT"),
    ("512000", "Banque", "ASSET", "DEBIT"),
    ("530000", "Caisse", "ASSET", "DEBIT"),
    ("607000", "Achats de marchandises", "EXPENSE", "DEBIT"),
    ("706000", "Prestations de services", "REVENUE", "CREDIT"),
    ("707000", "Ventes de marchandises", "REVENUE", "CREDIT"),
)


class ChartOfAccounts:
    """
    Registre des comptes.
    - numéro unique et non modifiable
    - désactivation plutôt que suppression ; suppression refusée si une écriture référence le compte
    """

    def __init__(self, repo: Repository, entries_repo: Optional[Repository] = None) -> None:
        self.repo = repo
        self.entries_repo = entries_repo

    # ----- Lecture ----- #

    def find_by_id(self, account_id: str) -> Optional[Account]:
        d = self.repo.get_by_id(account_id)
        return Account.model_validate(d) if d else None

    def find_by_number(self, number: str) -> Optional[Account]:
        d = self.repo.find_one(lambda r: r.get("number") == str(number).strip())
        return Account.model_validate(d) if d else None

    def get(self, account_id: str) -> Account:
        acc = self.find_by_id(account_id)
        if acc is None:
            raise NotFoundError("Compte", account_id)
        return acc

    def get_by_number(self, number: str) -> Account:
        acc = self.find_by_number(number)
        if acc is None:
            raise NotFoundError("Compte", number)
        return acc

    def list(self, *, type: Optional[str] = None, active: Optional[bool] = None, search: Optional[str] = None) -> List[Account]:
        needle = (search or "").strip().lower()

        def keep(r: Dict[str, Any]) -> bool:
            if type and r.get("type") != type:
                return False
            if active is not None and bool(r.get("active", True)) != active:
                return False
            if needle and needle not in str(r.get("number", "")).lower() and needle not in str(r.get("name", "")).lower():
                return False
            return True

        accounts = [Account.model_validate(d) for d in self.repo.find(keep)]
        return sorted(accounts, key=lambda a: a.number)

    # ----- Écriture ----- #

    def create(self, cmd: Union[CreateAccountCommand, Dict[str, Any]], *, actor: Actor) -> Account:
        require(actor, ACCOUNTS_MANAGE)
        cmd = parse_model(CreateAccountCommand, cmd)
        account = Account(**cmd.model_dump())
        # contrôle d'unicité et ajout sous le même verrou
        with self.repo.transaction() as rows:
            if any(r.get("number") == account.number for r in rows):
                raise ValidationError(
                    f"Le compte {account.number} existe déjà",
                    error_code="DUPLICATE_ACCOUNT",
                    details={"number": account.number},
                )
            rows.append(account.model_dump(mode="json"))
        logger.info("Compte %s créé (%s)", account.number, account.name)
        return account

    def update(self, account_id: str, cmd: Union[UpdateAccountCommand, Dict[str, Any]], *, actor: Actor) -> Account:
        require(actor, ACCOUNTS_MANAGE)
        cmd = parse_model(UpdateAccountCommand, cmd)
        account = self.get(account_id)
        changes = cmd.model_dump(include=cmd.model_fields_set)
        if "name" in changes and not changes["name"]:
            raise ValidationError("Le libellé du compte est obligatoire")
        updated = account.model_copy(update={**changes, "updated_at": utcnow()})
        self.repo.update(updated)
        return updated

    def deactivate(self, account_id: str, *, actor: Actor) -> Account:
        return self._set_active(account_id, False, actor)

    def activate(self, account_id: str, *, actor: Actor) -> Account:
        return self._set_active(account_id, True, actor)

    def _set_active(self, account_id: str, active: bool, actor: Actor) -> Account:
        require(actor, ACCOUNTS_MANAGE)
        account = self.get(account_id)
        updated = account.model_copy(update={"active": active, "updated_at": utcnow()})
        self.repo.update(updated)
        logger.info("Compte %s %s", account.number, "réactivé" if active else "désactivé")
        return updated

    def is_referenced(self, account_id: str) -> bool:
        if self.entries_repo is None:
            return False
        hit = self.entries_repo.find_one(
            lambda e: any(ln.get("account_id") == account_id for ln in e.get("lines") or [])
        )
        return hit is not None

    def delete(self, account_id: str, *, actor: Actor) -> bool:
        require(actor, ACCOUNTS_MANAGE)
        account = self.get(account_id)
        if self.is_referenced(account_id):
            raise ValidationError(
                f"Le compte {account.number} est utilisé par des écritures : désactivez-le plutôt",
                error_code="ACCOUNT_IN_USE",
                details={"account_id": account_id, "number": account.number},
            )
        return self.repo.delete(account_id)

    def seed_defaults(self) -> List[Account]:
        """Crée les comptes par défaut absents ; renvoie ceux créés."""
        created: List[Account] = []
        for number, name, acc_type, normal in DEFAULT_CHART:
            if self.find_by_number(number) is not None:
                continue
            created.append(
                self.create(
                    CreateAccountCommand(number=number, name=name, type=acc_type, normal_balance=normal),
                    actor=SYSTEM,
                )
            )
        return created

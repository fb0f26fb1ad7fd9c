"""
Contrôle d'accès par rôle.

- Actor : qui agit (id + rôle)
- require : lève PermissionDeniedError si le rôle n'a pas la permission
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Literal, Optional

from gescom.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

Role = Literal["ADMIN", "MANAGER", "ACCOUNTANT", "USER"]

JOURNAL_MANUAL = "journal.manual"
ACCOUNTS_MANAGE = "accounts.manage"
WORKFLOW_OVERRIDE = "workflow.override"
STOCK_ADJUST = "stock.adjust"

PERMISSIONS: Dict[str, FrozenSet[str]] = {
    JOURNAL_MANUAL: frozenset({"ADMIN", "ACCOUNTANT"}),
    ACCOUNTS_MANAGE: frozenset({"ADMIN", "ACCOUNTANT"}),
    WORKFLOW_OVERRIDE: frozenset({"ADMIN"}),
    STOCK_ADJUST: frozenset({"ADMIN", "MANAGER"}),
}


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role = "USER"
    name: Optional[str] = None

    def has(self, permission: str) -> bool:
        return self.role in PERMISSIONS.get(permission, frozenset())


# actions automatiques (numérotation, écritures de vente, seed du plan comptable)
SYSTEM = Actor(id="system", role="ADMIN", name="Système")


def require(actor: Optional[Actor], permission: str) -> Actor:
    if actor is None:
        raise PermissionDeniedError("Action réservée à un utilisateur identifié", details={"permission": permission})
    if not actor.has(permission):
        logger.warning("Permission %s refusée à %s (%s)", permission, actor.id, actor.role)
        raise PermissionDeniedError(
            f"Le rôle {actor.role} n'a pas la permission {permission}",
            details={"permission": permission, "actor_id": actor.id, "role": actor.role},
        )
    return actor

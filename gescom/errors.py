"""
Exceptions métier de gescom.

Chaque erreur porte un message lisible, un code stable et un dict de détails
pour faciliter le diagnostic côté appelant.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class GescomError(Exception):
    """Erreur de base."""

    error_code = "GESCOM_ERROR"
    status_code = 500

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, "details": self.details}


class ValidationError(GescomError):
    """Opération refusée : données ou transition invalides. Rien n'est écrit."""

    error_code = "VALIDATION_ERROR"
    status_code = 422


class IllegalTransitionError(ValidationError):
    error_code = "ILLEGAL_TRANSITION"

    def __init__(self, entity: str, current: str, target: str, reason: Optional[str] = None):
        message = f"Transition {entity} interdite : {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, details={"entity": entity, "from": current, "to": target})


class InsufficientStockError(ValidationError):
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, available: float, requested: float):
        super().__init__(
            f"Stock insuffisant pour le produit {product_id} : {available} disponible(s), {requested} demandé(s)",
            details={"product_id": product_id, "available": available, "requested": requested},
        )


class NotFoundError(GescomError):
    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} introuvable"
        if resource_id is not None:
            message = f"{resource} {resource_id} introuvable"
        super().__init__(message, details={"resource": resource, "id": resource_id})


class ConcurrencyError(GescomError):
    """Mise à jour concurrente détectée : relire puis réessayer."""

    error_code = "CONCURRENT_UPDATE"
    status_code = 409


class PermissionDeniedError(GescomError):
    error_code = "PERMISSION_DENIED"
    status_code = 403


class SequenceError(GescomError):
    """Le compteur de numérotation est indisponible."""

    error_code = "SEQUENCE_UNAVAILABLE"
    status_code = 503

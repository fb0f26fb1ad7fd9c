from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gescom.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # naïf en UTC, comme les dates stockées
    return datetime.now(timezone.utc).replace(tzinfo=None)


def round_cent(value: Union[int, float, Decimal]) -> int:
    """Arrondi commercial (demi vers le haut) au centime entier."""
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cent_to_eur(cents: int) -> str:
    return f"{int(cents) / 100:.2f} €"


def parse_model(model: Type[M], data: Union[M, Any]) -> M:
    """Valide un dict (ou laisse passer une instance) ; lève une ValidationError gescom."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"{model.__name__} invalide : {exc.error_count()} erreur(s)",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


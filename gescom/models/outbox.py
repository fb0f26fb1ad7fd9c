from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .common import gen_id, utcnow

EffectKind = Literal["POST_SALE", "POST_PAYMENT", "REVERSE_PAYMENT", "VOID_SALE"]
EffectStatus = Literal["PENDING", "DONE", "FAILED"]


class PendingEffect(BaseModel):
    """
    Effet de bord (écriture comptable) enregistré dans le même document que
    la transition qui le déclenche. L'id sert de clé d'idempotence au grand livre.
    """

    id: str = Field(default_factory=gen_id)
    kind: EffectKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: EffectStatus = "PENDING"
    attempts: int = 0
    last_error: Optional[str] = None
    result_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


def open_effects(effects: List[PendingEffect]) -> List[PendingEffect]:
    return [e for e in effects if e.status == "PENDING"]

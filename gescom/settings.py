from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILENAME = "settings.json"

StockPolicy = Literal["REJECT", "CLAMP"]


class NumberingRule(BaseModel):
    prefix: str
    padding: int = Field(default=6, ge=1, le=12)


class AccountMap(BaseModel):
    """Numéros de comptes utilisés par les écritures automatiques (PCG)."""

    receivable: str = "411000"
    sales: str = "707000"
    vat_collected: str = "445710"
    bank: str = "512000"
    supplier_payable: str = "401000"
    purchases: str = "607000"
    vat_deductible: str = "445660"


def _default_numbering() -> Dict[str, NumberingRule]:
    return {
        "QUOTE": NumberingRule(prefix="DEV", padding=6),
        "INVOICE": NumberingRule(prefix="FAC", padding=7),
        "DELIVERY_NOTE": NumberingRule(prefix="BL", padding=6),
        "JOURNAL_ENTRY": NumberingRule(prefix="EJ", padding=7),
    }


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")  # tolère d'anciennes clés dans settings.json

    currency: str = "EUR"
    numbering: Dict[str, NumberingRule] = Field(default_factory=_default_numbering)
    accounts: AccountMap = Field(default_factory=AccountMap)

    balance_tolerance: float = 0.001
    balance_sheet_tolerance: float = 0.01

    stock_policy: StockPolicy = "REJECT"
    stock_max_retries: int = Field(default=5, ge=1)

    payment_delay_days: int = Field(default=30, ge=0)
    quote_validity_days: int = Field(default=30, ge=0)
    outbox_max_retries: int = Field(default=5, ge=1)

    def rule_for(self, document_type: str) -> NumberingRule:
        rule = self.numbering.get(document_type)
        if rule is None:
            rule = _default_numbering()[document_type]
        return rule


def resolve_data_dir(data_dir: Optional[Union[str, Path]] = None) -> Path:
    if data_dir:
        return Path(data_dir)
    env = os.environ.get("GESCOM_DATA_DIR")
    return Path(env) if env else DEFAULT_DATA_DIR


def load_settings(data_dir: Optional[Union[str, Path]] = None) -> Settings:
    """
    Charge <data_dir>/settings.json.
    Fichier absent ou illisible → valeurs par défaut (avec un warning si illisible).
    Les clés de numérotation absentes du fichier gardent leur valeur par défaut.
    """
    path = resolve_data_dir(data_dir) / SETTINGS_FILENAME
    if not path.exists():
        return Settings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("settings.json illisible (%s), valeurs par défaut utilisées", exc)
        return Settings()
    if not isinstance(raw, dict):
        logger.warning("settings.json ignoré : objet JSON attendu")
        return Settings()

    numbering = {k: v.model_dump() for k, v in _default_numbering().items()}
    numbering.update(raw.get("numbering") or {})
    raw["numbering"] = numbering
    try:
        return Settings.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("settings.json invalide (%s erreur(s)), valeurs par défaut utilisées", exc.error_count())
        return Settings()

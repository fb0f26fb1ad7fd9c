from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from gescom.errors import SequenceError
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

QUOTE = "QUOTE"
INVOICE = "INVOICE"
DELIVERY_NOTE = "DELIVERY_NOTE"
JOURNAL_ENTRY = "JOURNAL_ENTRY"


def format_number(prefix: str, year: int, value: int, pad_width: int) -> str:
    """PREFIX + AA + numéro complété de zéros, ex. DEV24000001."""
    return f"{prefix}{year % 100:02d}{value:0{pad_width}d}"


class SequenceGenerator:
    """
    Compteurs de numérotation, une ligne par type de document.
    L'incrément passe par `repo.increment` : lecture + écriture atomiques.
    """

    def __init__(self, repo: Repository, settings: Optional[Settings] = None) -> None:
        self.repo = repo
        self.settings = settings or Settings()

    def next(self, document_type: str, prefix: str, pad_width: int, *, on: Optional[date] = None) -> str:
        try:
            value = self.repo.increment(document_type, "seq", 1)
        except OSError as exc:
            raise SequenceError(
                f"Impossible de générer le numéro {document_type} : {exc}",
                details={"document_type": document_type},
            ) from exc
        number = format_number(prefix, (on or date.today()).year, value, pad_width)
        logger.info("Numéro %s attribué (%s)", number, document_type)
        return number

    def next_for(self, document_type: str, *, on: Optional[date] = None) -> str:
        rule = self.settings.rule_for(document_type)
        return self.next(document_type, rule.prefix, rule.padding, on=on)

    def current(self, document_type: str) -> int:
        row = self.repo.get_by_id(document_type)
        return int(row.get("seq") or 0) if row else 0

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Union

from gescom.services.accounting_service import AccountingService
from gescom.services.catalog_service import CatalogService
from gescom.services.chart_service import ChartOfAccounts
from gescom.services.client_service import ClientService
from gescom.services.delivery_service import DeliveryNoteService
from gescom.services.invoice_service import InvoiceService
from gescom.services.ledger_service import Ledger
from gescom.services.notification_service import LoggingNotifier, Notifier
from gescom.services.outbox_service import OutboxProcessor
from gescom.services.quote_service import QuoteService
from gescom.services.report_service import ReportService
from gescom.services.sequence_service import SequenceGenerator
from gescom.services.stock_service import StockLedger
from gescom.services.workflow_service import WorkflowService
from gescom.settings import Settings, load_settings, resolve_data_dir
from gescom.storage.json_repo import JsonRepository
from gescom.storage.repo import MemoryRepository, Repository

logger = logging.getLogger(__name__)

# entité -> fichier JSON dans le dossier de données
REPO_FILES = {
    "sequence": "sequences.json",
    "account": "accounts.json",
    "journal_entry": "journal_entries.json",
    "client": "clients.json",
    "product": "products.json",
    "stock_movement": "stock_movements.json",
    "quote": "quotes.json",
    "invoice": "invoices.json",
    "delivery_note": "delivery_notes.json",
}


class Gescom:
    """Assemble les dépôts et services ; chaque service reçoit explicitement ses dépendances."""

    def __init__(
        self,
        repo_factory: Callable[[str], Repository],
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.notifier = notifier or LoggingNotifier()
        repos = {name: repo_factory(name) for name in REPO_FILES}
        self.repos = repos

        self.sequences = SequenceGenerator(repos["sequence"], self.settings)
        self.chart = ChartOfAccounts(repos["account"], repos["journal_entry"])
        self.ledger = Ledger(repos["journal_entry"], self.chart, self.sequences, self.settings)
        self.accounting = AccountingService(self.ledger, self.chart, self.settings)
        self.reports = ReportService(self.ledger, self.chart, self.settings)

        self.clients = ClientService(repos["client"])
        self.catalog = CatalogService(repos["product"])
        self.stock = StockLedger(repos["product"], repos["stock_movement"], self.notifier, self.settings)

        self.outbox = OutboxProcessor(repos["invoice"], self.accounting, self.settings)
        self.quotes = QuoteService(repos["quote"], self.sequences, self.clients, self.catalog, self.settings)
        self.deliveries = DeliveryNoteService(
            repos["delivery_note"], self.sequences, self.clients, self.catalog, self.stock, self.notifier, self.settings,
        )
        self.invoices = InvoiceService(
            repos["invoice"], self.sequences, self.clients, self.catalog, self.outbox, self.notifier, self.settings,
            quotes=self.quotes, deliveries=self.deliveries,
        )
        self.workflow = WorkflowService(self.quotes, self.invoices, self.deliveries)

    @classmethod
    def open(
        cls,
        data_dir: Optional[Union[str, Path]] = None,
        *,
        notifier: Optional[Notifier] = None,
        backup_enabled: bool = False,
    ) -> "Gescom":
        """Dépôts JSON dans `data_dir` (ou GESCOM_DATA_DIR, ou ./data)."""
        base = resolve_data_dir(data_dir)
        base.mkdir(parents=True, exist_ok=True)
        settings = load_settings(base)
        logger.info("Données gescom dans %s", base)

        def factory(name: str) -> Repository:
            return JsonRepository(base / REPO_FILES[name], entity_name=name, backup_enabled=backup_enabled)

        return cls(factory, settings, notifier)

    @classmethod
    def in_memory(cls, settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> "Gescom":
        return cls(lambda name: MemoryRepository(entity_name=name), settings, notifier)

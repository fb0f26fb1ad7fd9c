from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from gescom.errors import IllegalTransitionError, NotFoundError, ValidationError
from gescom.models.commands import CreateQuoteCommand, LineItemInput
from gescom.models.common import parse_model, utcnow
from gescom.models.line_item import recalc_totals
from gescom.models.quote import CONVERTED_STATUSES, QUOTE_TRANSITIONS, Quote
from gescom.services.authz import WORKFLOW_OVERRIDE, Actor, require
from gescom.services.catalog_service import CatalogService
from gescom.services.client_service import ClientService
from gescom.services.sequence_service import QUOTE, SequenceGenerator
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

_STAMPS = {"SENT": "sent_at", "ACCEPTED": "accepted_at", "REJECTED": "rejected_at"}


class QuoteService:
    def __init__(
        self,
        repo: Repository,
        sequences: SequenceGenerator,
        clients: ClientService,
        catalog: CatalogService,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repo = repo
        self.sequences = sequences
        self.clients = clients
        self.catalog = catalog
        self.settings = settings or Settings()

    # ----- Lecture ----- #

    def get(self, quote_id: str) -> Quote:
        d = self.repo.get_by_id(quote_id)
        if not d:
            raise NotFoundError("Devis", quote_id)
        return Quote.model_validate(d)

    def list_quotes(self, *, status: Optional[str] = None, client_id: Optional[str] = None) -> List[Quote]:
        rows = self.repo.find(
            lambda d: (status is None or d.get("status") == status)
            and (client_id is None or (d.get("client") or {}).get("client_id") == client_id)
        )
        return sorted((Quote.model_validate(d) for d in rows), key=lambda q: q.number)

    # ----- Écriture ----- #

    def _save(self, quote: Quote) -> Quote:
        quote.updated_at = utcnow()
        row = self.repo.compare_and_set(quote.id, quote.version, quote.model_dump(mode="json", exclude={"version"}))
        return Quote.model_validate(row)

    def create(self, cmd: Union[CreateQuoteCommand, Dict[str, Any]], *, actor: Actor) -> Quote:
        cmd = parse_model(CreateQuoteCommand, cmd)
        client = self.clients.snapshot(cmd.client_id)
        items = self.catalog.build_lines(cmd.items)
        issue = cmd.issue_date or date.today()
        validity = cmd.validity_date or issue + timedelta(days=self.settings.quote_validity_days)
        if validity < issue:
            raise ValidationError("La date de validité précède la date d'émission")

        # numéro en dernier : pas de numéro consommé si la saisie est invalide
        number = self.sequences.next_for(QUOTE, on=issue)
        quote = Quote(
            number=number,
            client=client,
            issue_date=issue,
            validity_date=validity,
            currency=self.settings.currency,
            terms=cmd.terms,
            internal_notes=cmd.internal_notes,
            customer_notes=cmd.customer_notes,
            created_by=actor.id,
            **recalc_totals(items),
        )
        self.repo.add(quote)
        logger.info("Devis %s créé pour %s (%.2f TTC)", quote.number, client.company_name, quote.total_ttc_cent / 100)
        return quote

    def update_items(self, quote_id: str, items: Sequence[Union[LineItemInput, Dict[str, Any]]], *, actor: Actor) -> Quote:
        """Lignes modifiables en DRAFT ; au-delà, dérogation administrateur sauf devis converti."""
        quote = self.get(quote_id)
        if quote.status != "DRAFT":
            if quote.is_converted:
                raise ValidationError(f"Devis {quote.number} converti : lignes figées", error_code="QUOTE_LOCKED")
            require(actor, WORKFLOW_OVERRIDE)
            logger.warning("Lignes du devis %s modifiées en %s par %s", quote.number, quote.status, actor.id)
        lines = self.catalog.build_lines([parse_model(LineItemInput, it) for it in items])
        quote = quote.model_copy(update={**recalc_totals(lines), "updated_by": actor.id})
        return self._save(quote)

    # ----- Statuts ----- #

    def transition(self, quote_id: str, target: str, *, actor: Actor, force: bool = False) -> Quote:
        quote = self.get(quote_id)
        current = quote.status
        if target not in QUOTE_TRANSITIONS:
            raise ValidationError(f"Statut de devis inconnu : {target}")
        if target in CONVERTED_STATUSES:
            raise IllegalTransitionError("devis", current, target, "passer par la conversion")
        if target == current:
            raise IllegalTransitionError("devis", current, target, "statut inchangé")
        if target not in QUOTE_TRANSITIONS[current]:
            if not force or quote.is_converted:
                raise IllegalTransitionError("devis", current, target)
            require(actor, WORKFLOW_OVERRIDE)
            logger.warning("Transition forcée du devis %s : %s -> %s par %s", quote.number, current, target, actor.id)
        if target == "SENT" and not quote.items:
            raise ValidationError(f"Devis {quote.number} sans ligne : envoi impossible")

        quote.status = target
        quote.updated_by = actor.id
        stamp = _STAMPS.get(target)
        if stamp:
            setattr(quote, stamp, utcnow())
        saved = self._save(quote)
        logger.info("Devis %s : %s -> %s", saved.number, current, target)
        return saved

    def send(self, quote_id: str, *, actor: Actor) -> Quote:
        return self.transition(quote_id, "SENT", actor=actor)

    def accept(self, quote_id: str, *, actor: Actor) -> Quote:
        return self.transition(quote_id, "ACCEPTED", actor=actor)

    def reject(self, quote_id: str, *, actor: Actor) -> Quote:
        return self.transition(quote_id, "REJECTED", actor=actor)

    def expire_due(self, today: Optional[date] = None) -> List[Quote]:
        """Passe en EXPIRED les devis envoyés dont la validité est dépassée."""
        today = today or date.today()
        expired: List[Quote] = []
        for quote in self.list_quotes(status="SENT"):
            if quote.validity_date < today:
                quote.status = "EXPIRED"
                expired.append(self._save(quote))
                logger.info("Devis %s expiré (validité %s)", quote.number, quote.validity_date)
        return expired

    def delete(self, quote_id: str, *, actor: Actor) -> bool:
        quote = self.get(quote_id)
        if quote.status != "DRAFT" or quote.is_converted:
            raise ValidationError(
                f"Seul un devis brouillon jamais converti peut être supprimé ({quote.number} est {quote.status})",
                error_code="QUOTE_NOT_DELETABLE",
            )
        logger.info("Devis %s supprimé par %s", quote.number, actor.id)
        return self.repo.delete(quote_id)

    # ----- Conversion ----- #

    def ensure_convertible(self, quote: Quote) -> None:
        if quote.is_converted:
            raise ValidationError(
                f"Devis {quote.number} déjà converti",
                error_code="QUOTE_ALREADY_CONVERTED",
                details={"invoice_id": quote.converted_to_invoice_id, "delivery_note_id": quote.converted_to_delivery_note_id},
            )
        if quote.status != "ACCEPTED":
            raise IllegalTransitionError("devis", quote.status, "CONVERTED", "le devis doit être ACCEPTED")

    def mark_converted(self, quote: Quote, *, invoice_id: Optional[str] = None, delivery_note_id: Optional[str] = None) -> Quote:
        """
        Marque la conversion sur la version lue : si un autre appel a converti
        le devis entre-temps, le compare-and-set échoue (ConcurrencyError).
        """
        self.ensure_convertible(quote)
        if invoice_id:
            quote.status = "CONVERTED_TO_INVOICE"
            quote.converted_to_invoice_id = invoice_id
        else:
            quote.status = "CONVERTED_TO_DELIVERY"
            quote.converted_to_delivery_note_id = delivery_note_id
        saved = self._save(quote)
        logger.info("Devis %s converti (%s)", saved.number, saved.status)
        return saved

    def release_conversion(self, quote_id: str) -> Quote:
        """Annule la conversion (document cible supprimé) : retour à ACCEPTED."""
        quote = self.get(quote_id)
        quote.status = "ACCEPTED"
        quote.converted_to_invoice_id = None
        quote.converted_to_delivery_note_id = None
        return self._save(quote)

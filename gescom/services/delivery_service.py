from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from gescom.errors import GescomError, IllegalTransitionError, NotFoundError, ValidationError
from gescom.models.client import Address, ClientSnapshot
from gescom.models.commands import CreateDeliveryNoteCommand, DeliveryItemInput
from gescom.models.common import parse_model, utcnow
from gescom.models.delivery_note import (
    DELIVERY_TRANSITIONS,
    STOCK_BACK_STATUSES,
    STOCK_OUT_STATUSES,
    ZERO_QTY_STATUSES,
    DeliveryNote,
    DeliveryNoteItem,
)
from gescom.models.line_item import LineItem
from gescom.services.authz import WORKFLOW_OVERRIDE, Actor, require
from gescom.services.catalog_service import CatalogService
from gescom.services.client_service import ClientService
from gescom.services.notification_service import LoggingNotifier, Notifier, SafeNotifier
from gescom.services.sequence_service import DELIVERY_NOTE, SequenceGenerator
from gescom.services.stock_service import StockLedger
from gescom.settings import Settings
from gescom.storage.repo import Repository

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({"PENDING_PREPARATION", "READY_TO_SHIP"})

StockMove = Tuple[str, float, str]


def validate_quantities(items: Sequence[DeliveryNoteItem], target: str) -> None:
    """Quantité livrée ≤ commandée ; > 0 sauf en préparation ou annulé."""
    for idx, item in enumerate(items):
        if item.quantity_delivered > item.quantity_ordered:
            raise ValidationError(
                f"Ligne {idx + 1} ({item.product_name}) : livré {item.quantity_delivered} > commandé {item.quantity_ordered}",
                error_code="DELIVERED_EXCEEDS_ORDERED",
            )
        if target not in ZERO_QTY_STATUSES and item.quantity_delivered <= 0:
            raise ValidationError(
                f"Ligne {idx + 1} ({item.product_name}) : quantité livrée nulle, statut {target} impossible",
                error_code="DELIVERED_QUANTITY_REQUIRED",
                details={"line": idx + 1, "target": target},
            )


def stock_moves(
    note: DeliveryNote,
    current: str,
    target: str,
    outstanding: Optional[Dict[str, float]] = None,
) -> List[StockMove]:
    """
    Mouvements de stock induits par current -> target (produit, delta, motif).

    Toute sortie d'un statut expédié remet la marchandise en stock, y compris
    un retour forcé en préparation. `outstanding` est le solde des mouvements
    déjà passés par ce bon (négatif = sorti) : on rend ce qui est réellement
    sorti, pas la quantité livrée.
    """
    if target in STOCK_OUT_STATUSES and current not in STOCK_OUT_STATUSES:
        return [(it.product_id, -it.quantity_delivered, "DELIVERY_OUT") for it in note.items if it.quantity_delivered > 0]
    if current in STOCK_OUT_STATUSES and target not in STOCK_OUT_STATUSES:
        reason = {"RETURNED": "DELIVERY_RETURN", "CANCELLED": "DELIVERY_CANCEL"}.get(target, "DELIVERY_REVERT")
        if outstanding is None:
            return [(it.product_id, it.quantity_delivered, reason) for it in note.items if it.quantity_delivered > 0]
        return [(product_id, -qty, reason) for product_id, qty in sorted(outstanding.items()) if qty < 0]
    return []


class DeliveryNoteService:
    def __init__(
        self,
        repo: Repository,
        sequences: SequenceGenerator,
        clients: ClientService,
        catalog: CatalogService,
        stock: StockLedger,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repo = repo
        self.sequences = sequences
        self.clients = clients
        self.catalog = catalog
        self.stock = stock
        self.notifier = SafeNotifier(notifier or LoggingNotifier())
        self.settings = settings or Settings()

    # ----- Lecture ----- #

    def get(self, note_id: str) -> DeliveryNote:
        d = self.repo.get_by_id(note_id)
        if not d:
            raise NotFoundError("Bon de livraison", note_id)
        return DeliveryNote.model_validate(d)

    def list_notes(
        self,
        *,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        invoiced: Optional[bool] = None,
    ) -> List[DeliveryNote]:
        def keep(d: Dict[str, Any]) -> bool:
            if status is not None and d.get("status") != status:
                return False
            if client_id is not None and (d.get("client") or {}).get("client_id") != client_id:
                return False
            if invoiced is not None and bool(d.get("invoice_id")) != invoiced:
                return False
            return True

        return sorted((DeliveryNote.model_validate(d) for d in self.repo.find(keep)), key=lambda n: n.number)

    # ----- Création ----- #

    def _save(self, note: DeliveryNote) -> DeliveryNote:
        note.updated_at = utcnow()
        row = self.repo.compare_and_set(note.id, note.version, note.model_dump(mode="json", exclude={"version"}))
        return DeliveryNote.model_validate(row)

    def _store_new(self, note: DeliveryNote) -> DeliveryNote:
        self.repo.add(note)
        logger.info("Bon de livraison %s créé pour %s", note.number, note.client.company_name)
        return note

    def create(self, cmd: Union[CreateDeliveryNoteCommand, Dict[str, Any]], *, actor: Actor) -> DeliveryNote:
        cmd = parse_model(CreateDeliveryNoteCommand, cmd)
        client = self.clients.snapshot(cmd.client_id)
        items = [self.catalog.build_delivery_item(it) for it in cmd.items]
        validate_quantities(items, "PENDING_PREPARATION")
        note = DeliveryNote(
            number=self.sequences.next_for(DELIVERY_NOTE),
            client=client,
            items=items,
            delivery_date=cmd.delivery_date,
            shipping_address=cmd.shipping_address or client.billing_address,
            carrier=cmd.carrier,
            tracking_number=cmd.tracking_number,
            notes=cmd.notes,
            created_by=actor.id,
        )
        return self._store_new(note)

    def create_from_lines(
        self,
        client: ClientSnapshot,
        lines: Sequence[LineItem],
        *,
        actor: Actor,
        quote_id: Optional[str] = None,
        shipping_address: Optional[Address] = None,
    ) -> DeliveryNote:
        """Lignes d'un devis -> bon de livraison ; les lignes libres (sans produit) sont ignorées."""
        items = [
            DeliveryNoteItem(
                product_id=ln.product_id,
                product_ref=ln.product_ref,
                product_name=ln.product_name,
                description=ln.description,
                is_service=ln.is_service,
                quantity_ordered=ln.quantity,
                quantity_delivered=ln.quantity,
                unit_price_ht_cent=ln.unit_price_ht_cent,
                vat_rate=ln.vat_rate,
                discount_rate=ln.discount_rate,
            )
            for ln in lines
            if ln.product_id
        ]
        if not items:
            raise ValidationError("Aucune ligne produit à livrer", error_code="NOTHING_TO_DELIVER")
        note = DeliveryNote(
            number=self.sequences.next_for(DELIVERY_NOTE),
            client=client,
            items=items,
            shipping_address=shipping_address or client.billing_address,
            quote_id=quote_id,
            created_by=actor.id,
        )
        return self._store_new(note)

    def update_items(self, note_id: str, items: Sequence[Union[DeliveryItemInput, Dict[str, Any]]], *, actor: Actor) -> DeliveryNote:
        note = self.get(note_id)
        if note.status not in EDITABLE_STATUSES:
            raise ValidationError(f"Bon {note.number} en {note.status} : lignes figées", error_code="DELIVERY_NOTE_LOCKED")
        new_items = [self.catalog.build_delivery_item(parse_model(DeliveryItemInput, it)) for it in items]
        if not new_items:
            raise ValidationError("Un bon de livraison doit comporter au moins une ligne")
        validate_quantities(new_items, note.status)
        note.items = new_items
        return self._save(note)

    def update_shipping(
        self,
        note_id: str,
        *,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        delivery_date: Optional[date] = None,
    ) -> DeliveryNote:
        note = self.get(note_id)
        if carrier is not None:
            note.carrier = carrier
        if tracking_number is not None:
            note.tracking_number = tracking_number
        if delivery_date is not None:
            note.delivery_date = delivery_date
        return self._save(note)

    # ----- Statuts ----- #

    def _apply_moves(self, note: DeliveryNote, moves: List[StockMove], before: Dict[str, float], actor: Actor) -> int:
        count = 0
        try:
            for product_id, delta, reason in moves:
                if self.stock.apply(
                    product_id, delta, reason=reason, document_type="DELIVERY_NOTE", document_id=note.id, actor_id=actor.id,
                ) is not None:
                    count += 1
        except (GescomError, OSError):
            self._compensate(note, before, actor)
            raise
        return count

    def _compensate(self, note: DeliveryNote, before: Dict[str, float], actor: Actor) -> None:
        """Ramène le solde des mouvements du bon à `before`, d'après les deltas réellement appliqués."""
        after = self.stock.document_balance(note.id)
        for product_id in sorted(set(after) | set(before)):
            delta = round(after.get(product_id, 0.0) - before.get(product_id, 0.0), 6)
            if not delta:
                continue
            try:
                self.stock.apply(
                    product_id, -delta, reason="COMPENSATION", document_type="DELIVERY_NOTE", document_id=note.id,
                    note="annulation du mouvement après échec", actor_id=actor.id,
                )
            except (GescomError, OSError):
                logger.exception("Compensation du stock impossible pour %s (bon %s, delta %s)", product_id, note.number, -delta)

    def change_status(self, note_id: str, target: str, *, actor: Actor, force: bool = False) -> DeliveryNote:
        """
        Change le statut et applique le stock :
        - entrée en SHIPPED/PARTIALLY_DELIVERED/DELIVERED : sortie de stock
        - sortie d'un statut expédié (CANCELLED, RETURNED ou retour forcé) : retour en stock
        Le stock est mouvementé avant l'écriture du bon, puis compensé si celle-ci échoue.
        """
        note = self.get(note_id)
        current = note.status
        if target not in DELIVERY_TRANSITIONS:
            raise ValidationError(f"Statut de bon de livraison inconnu : {target}")
        if target == current:
            raise IllegalTransitionError("bon de livraison", current, target, "statut inchangé")
        if target not in DELIVERY_TRANSITIONS[current]:
            if not force or not DELIVERY_TRANSITIONS[current]:
                raise IllegalTransitionError("bon de livraison", current, target)
            require(actor, WORKFLOW_OVERRIDE)
            logger.warning("Transition forcée du bon %s : %s -> %s par %s", note.number, current, target, actor.id)
        if not note.items:
            raise ValidationError(f"Bon {note.number} sans ligne")
        validate_quantities(note.items, target)
        if note.invoice_id and target in STOCK_BACK_STATUSES:
            logger.warning("Bon %s déjà facturé passé en %s : prévoir un avoir", note.number, target)

        before = self.stock.document_balance(note.id)
        moves = stock_moves(note, current, target, before)
        outgoing = [(pid, -delta) for pid, delta, _ in moves if delta < 0]
        if outgoing:
            self.stock.check_available(outgoing)
        applied = self._apply_moves(note, moves, before, actor)

        note.status = target
        now = utcnow()
        if target == "SHIPPED" and note.shipped_at is None:
            note.shipped_at = now
        if target == "DELIVERED":
            note.delivered_at = now
            note.shipped_at = note.shipped_at or now
        try:
            saved = self._save(note)
        except (GescomError, OSError):
            logger.warning("Écriture du bon %s en échec, compensation du stock", note.number)
            self._compensate(note, before, actor)
            raise

        logger.info("Bon de livraison %s : %s -> %s (%s mouvement(s) de stock)", saved.number, current, target, applied)
        self.notifier.broadcast("delivery_note_status", {"id": saved.id, "number": saved.number, "status": saved.status})
        return saved

    # ----- Facturation ----- #

    def mark_invoiced(self, notes: Sequence[DeliveryNote], invoice_id: str) -> List[DeliveryNote]:
        out = []
        for note in notes:
            note.invoice_id = invoice_id
            out.append(self._save(note))
        return out

    def release_invoice(self, invoice_id: str) -> List[DeliveryNote]:
        out = []
        for note in self.list_notes(invoiced=True):
            if note.invoice_id == invoice_id:
                note.invoice_id = None
                out.append(self._save(note))
        return out

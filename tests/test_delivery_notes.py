import pytest

from gescom.app import Gescom
from gescom.errors import (
    ConcurrencyError,
    IllegalTransitionError,
    InsufficientStockError,
    PermissionDeniedError,
    ValidationError,
)
from gescom.services.delivery_service import stock_moves
from gescom.settings import Settings


@pytest.fixture
def make_note(app, client, speaker, user):
    def _make(quantity=5, delivered=None, product=None, client_id=None, status=None):
        note = app.deliveries.create(
            {
                "client_id": client_id or client.id,
                "items": [{
                    "product_id": (product or speaker).id,
                    "quantity_ordered": quantity,
                    "quantity_delivered": quantity if delivered is None else delivered,
                }],
            },
            actor=user,
        )
        if status:
            note = app.deliveries.change_status(note.id, status, actor=user)
        return note

    return _make


def _stock(app, product):
    return app.catalog.get(product.id).stock_quantity


class TestCreate:
    def test_create_pending(self, app, make_note, client):
        note = make_note()
        assert note.status == "PENDING_PREPARATION"
        assert note.number.startswith("BL")
        assert note.items[0].product_ref == "ENC-01"
        assert note.items[0].unit_price_ht_cent == 25000
        assert note.shipping_address == client.billing_address

    def test_delivered_above_ordered_rejected(self, make_note):
        with pytest.raises(ValidationError):
            make_note(quantity=2, delivered=3)

    def test_items_locked_once_shipped(self, app, make_note, speaker, user):
        note = make_note(status="SHIPPED")
        with pytest.raises(ValidationError) as exc:
            app.deliveries.update_items(note.id, [{"product_id": speaker.id, "quantity_ordered": 1, "quantity_delivered": 1}], actor=user)
        assert exc.value.error_code == "DELIVERY_NOTE_LOCKED"

    def test_shipping_details_editable_after_shipping(self, app, make_note):
        note = make_note(status="SHIPPED")
        updated = app.deliveries.update_shipping(note.id, carrier="Geodis", tracking_number="GD-42")
        assert (updated.carrier, updated.tracking_number) == ("Geodis", "GD-42")
        assert app.deliveries.update_shipping(note.id, carrier="DHL").tracking_number == "GD-42"


class TestStock:
    def test_ship_then_return(self, app, make_note, speaker, user):
        note = make_note()
        assert _stock(app, speaker) == 12

        app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert _stock(app, speaker) == 7
        app.deliveries.change_status(note.id, "DELIVERED", actor=user)
        assert _stock(app, speaker) == 7
        returned = app.deliveries.change_status(note.id, "RETURNED", actor=user)
        assert returned.status == "RETURNED"
        assert _stock(app, speaker) == 12

        reasons = [(m.reason, m.delta) for m in app.stock.history(speaker.id)]
        assert reasons == [("DELIVERY_OUT", -5), ("DELIVERY_RETURN", 5)]

    def test_direct_delivery_moves_stock_once(self, app, make_note, speaker, user):
        note = make_note(quantity=3)
        delivered = app.deliveries.change_status(note.id, "DELIVERED", actor=user)
        assert delivered.shipped_at is not None
        assert delivered.delivered_at is not None
        assert _stock(app, speaker) == 9

    def test_cancel_after_shipping_restocks(self, app, make_note, speaker, user):
        note = make_note(status="SHIPPED")
        app.deliveries.change_status(note.id, "CANCELLED", actor=user)
        assert _stock(app, speaker) == 12
        assert app.stock.history(speaker.id)[-1].reason == "DELIVERY_CANCEL"

    def test_cancel_before_shipping_does_not_move_stock(self, app, make_note, speaker, user):
        note = make_note()
        app.deliveries.change_status(note.id, "CANCELLED", actor=user)
        assert _stock(app, speaker) == 12
        assert app.stock.history(speaker.id) == []

    def test_insufficient_stock_rejected(self, app, make_note, speaker, user):
        note = make_note(quantity=20)
        with pytest.raises(InsufficientStockError) as exc:
            app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert exc.value.details["available"] == 12
        assert app.deliveries.get(note.id).status == "PENDING_PREPARATION"
        assert _stock(app, speaker) == 12

    def test_zero_delivered_cannot_ship(self, app, make_note, user):
        note = make_note(delivered=0)
        with pytest.raises(ValidationError) as exc:
            app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert exc.value.error_code == "DELIVERED_QUANTITY_REQUIRED"
        # quantité nulle tolérée à l'annulation
        assert app.deliveries.change_status(note.id, "CANCELLED", actor=user).status == "CANCELLED"

    def test_low_stock_alert(self, app, make_note, speaker, notifier):
        make_note(quantity=10, status="SHIPPED")
        assert _stock(app, speaker) == 2
        assert "stock_alert" in notifier.names()
        assert {"delivery_note_status", "stock_updated"} <= set(notifier.names())

    def test_no_alert_above_threshold(self, make_note, notifier):
        make_note(quantity=3, status="SHIPPED")
        assert "stock_alert" not in notifier.names()

    def test_service_items_skip_stock(self, app, make_note, installation):
        make_note(quantity=1, product=installation, status="SHIPPED")
        assert _stock(app, installation) == 0
        assert app.stock.history(installation.id) == []

    def test_failed_save_compensates_stock(self, app, make_note, speaker, user, monkeypatch):
        note = make_note()

        def conflict(*args, **kwargs):
            raise ConcurrencyError("bon modifié entre-temps")

        monkeypatch.setattr(app.deliveries.repo, "compare_and_set", conflict)
        with pytest.raises(ConcurrencyError):
            app.deliveries.change_status(note.id, "SHIPPED", actor=user)

        assert _stock(app, speaker) == 12
        assert app.deliveries.get(note.id).status == "PENDING_PREPARATION"
        assert [m.reason for m in app.stock.history(speaker.id)] == ["DELIVERY_OUT", "COMPENSATION"]

    def test_notifier_failure_does_not_break_transition(self, app, make_note, speaker, user, notifier, monkeypatch):
        def boom(event, data):
            raise RuntimeError("websocket fermé")

        monkeypatch.setattr(notifier, "broadcast", boom)
        note = make_note(status="SHIPPED")
        assert note.status == "SHIPPED"
        assert _stock(app, speaker) == 7


class TestTransitions:
    @pytest.mark.parametrize(
        "path,target",
        [
            ([], "RETURNED"),
            (["SHIPPED"], "READY_TO_SHIP"),
            (["CANCELLED"], "SHIPPED"),
            (["SHIPPED", "RETURNED"], "DELIVERED"),
        ],
    )
    def test_illegal(self, app, make_note, user, path, target):
        note = make_note()
        for step in path:
            note = app.deliveries.change_status(note.id, step, actor=user)
        with pytest.raises(IllegalTransitionError):
            app.deliveries.change_status(note.id, target, actor=user)

    def test_force_requires_admin(self, app, make_note, user, admin, speaker):
        note = make_note(status="DELIVERED")
        with pytest.raises(PermissionDeniedError):
            app.deliveries.change_status(note.id, "SHIPPED", actor=user, force=True)
        forced = app.deliveries.change_status(note.id, "SHIPPED", actor=admin, force=True)
        assert forced.status == "SHIPPED"
        assert _stock(app, speaker) == 7

    def test_forced_move_back_to_preparation_restocks(self, app, make_note, user, admin, speaker):
        note = make_note(status="DELIVERED")
        assert _stock(app, speaker) == 7

        app.deliveries.change_status(note.id, "READY_TO_SHIP", actor=admin, force=True)
        assert _stock(app, speaker) == 12
        assert app.stock.history(speaker.id)[-1].reason == "DELIVERY_REVERT"

        # nouvelle expédition : une seule sortie au total
        app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert _stock(app, speaker) == 7
        assert app.stock.document_balance(note.id) == {speaker.id: -5}

    def test_terminal_status_cannot_be_forced(self, app, make_note, admin):
        note = make_note(status="CANCELLED")
        with pytest.raises(IllegalTransitionError):
            app.deliveries.change_status(note.id, "SHIPPED", actor=admin, force=True)

    def test_stock_moves_table(self, make_note):
        note = make_note(quantity=4)
        assert stock_moves(note, "PENDING_PREPARATION", "READY_TO_SHIP") == []
        assert stock_moves(note, "READY_TO_SHIP", "SHIPPED")[0][1:] == (-4, "DELIVERY_OUT")
        assert stock_moves(note, "SHIPPED", "PARTIALLY_DELIVERED") == []
        assert stock_moves(note, "DELIVERED", "RETURNED")[0][1:] == (4, "DELIVERY_RETURN")
        assert stock_moves(note, "DELIVERED", "READY_TO_SHIP")[0][1:] == (4, "DELIVERY_REVERT")
        product_id = note.items[0].product_id
        assert stock_moves(note, "SHIPPED", "RETURNED", {product_id: -3}) == [(product_id, 3, "DELIVERY_RETURN")]
        assert stock_moves(note, "SHIPPED", "CANCELLED", {}) == []
        assert stock_moves(note, "PENDING_PREPARATION", "CANCELLED") == []


class TestStockLedger:
    def test_cas_conflict_is_retried(self, app, speaker, monkeypatch):
        real = app.stock.products.compare_and_set
        calls = []

        def flaky(obj_id, expected_version, changes):
            calls.append(expected_version)
            if len(calls) == 1:
                raise ConcurrencyError("conflit")
            return real(obj_id, expected_version, changes)

        monkeypatch.setattr(app.stock.products, "compare_and_set", flaky)
        product = app.stock.apply(speaker.id, -1, reason="DELIVERY_OUT")
        assert product.stock_quantity == 11
        assert len(calls) == 2
        assert len(app.stock.history(speaker.id)) == 1

    def test_gives_up_after_max_retries(self, app, speaker, monkeypatch):
        def always(*args, **kwargs):
            raise ConcurrencyError("conflit")

        monkeypatch.setattr(app.stock.products, "compare_and_set", always)
        with pytest.raises(ConcurrencyError):
            app.stock.apply(speaker.id, -1, reason="DELIVERY_OUT")
        assert app.stock.history(speaker.id) == []

    def test_clamp_policy(self, notifier, admin):
        from gescom.models.product import Product

        app = Gescom.in_memory(settings=Settings(stock_policy="CLAMP"), notifier=notifier)
        p = app.catalog.add_product(Product(ref="CAB-01", name="Câble", stock_quantity=3))
        updated = app.stock.apply(p.id, -5, reason="DELIVERY_OUT")
        assert updated.stock_quantity == 0
        assert app.stock.history(p.id)[0].delta == -3

    def test_clamped_shipment_returns_only_what_left(self, notifier, user):
        from gescom.models.client import Client
        from gescom.models.product import Product

        app = Gescom.in_memory(settings=Settings(stock_policy="CLAMP"), notifier=notifier)
        client = app.clients.add_client(Client(company_name="Festival des Monts"))
        p = app.catalog.add_product(Product(ref="CAB-01", name="Câble", stock_quantity=3))
        note = app.deliveries.create(
            {"client_id": client.id, "items": [{"product_id": p.id, "quantity_ordered": 5, "quantity_delivered": 5}]},
            actor=user,
        )
        app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert app.catalog.get(p.id).stock_quantity == 0

        app.deliveries.change_status(note.id, "RETURNED", actor=user)
        assert app.catalog.get(p.id).stock_quantity == 3
        assert [m.delta for m in app.stock.history(p.id)] == [-3, 3]

    def test_clamped_shipment_compensation(self, notifier, user, monkeypatch):
        from gescom.models.client import Client
        from gescom.models.product import Product

        app = Gescom.in_memory(settings=Settings(stock_policy="CLAMP"), notifier=notifier)
        client = app.clients.add_client(Client(company_name="Festival des Monts"))
        p = app.catalog.add_product(Product(ref="CAB-01", name="Câble", stock_quantity=3))
        note = app.deliveries.create(
            {"client_id": client.id, "items": [{"product_id": p.id, "quantity_ordered": 5, "quantity_delivered": 5}]},
            actor=user,
        )

        def conflict(*args, **kwargs):
            raise ConcurrencyError("bon modifié entre-temps")

        monkeypatch.setattr(app.deliveries.repo, "compare_and_set", conflict)
        with pytest.raises(ConcurrencyError):
            app.deliveries.change_status(note.id, "SHIPPED", actor=user)
        assert app.catalog.get(p.id).stock_quantity == 3
        assert app.stock.document_balance(note.id) == {}

    def test_manual_adjustment(self, app, speaker, manager, user):
        with pytest.raises(PermissionDeniedError):
            app.stock.adjust(speaker.id, actor=user, delta=1)
        assert app.stock.adjust(speaker.id, actor=manager, new_quantity=20, reason="inventaire").stock_quantity == 20
        assert app.stock.adjust(speaker.id, actor=manager, delta=-5).stock_quantity == 15
        with pytest.raises(InsufficientStockError):
            app.stock.adjust(speaker.id, actor=manager, delta=-16)
        with pytest.raises(ValidationError):
            app.stock.adjust(speaker.id, actor=manager)

    def test_inventory_count_survives_concurrent_move(self, app, speaker, manager, monkeypatch):
        real = app.stock.products.compare_and_set
        raced = []

        def racing(obj_id, expected_version, changes):
            if not raced:
                raced.append(True)
                row = app.stock.products.get_by_id(obj_id)
                real(obj_id, int(row.get("version") or 0), {"stock_quantity": row["stock_quantity"] - 2})
            return real(obj_id, expected_version, changes)

        monkeypatch.setattr(app.stock.products, "compare_and_set", racing)
        updated = app.stock.adjust(speaker.id, actor=manager, new_quantity=20, reason="inventaire")
        assert updated.stock_quantity == 20
        assert [m.delta for m in app.stock.history(speaker.id)] == [10]


class TestInvoicing:
    def test_notes_to_invoice(self, app, make_note, installation, user):
        first = make_note(quantity=3, status="SHIPPED")
        second = app.deliveries.create(
            {
                "client_id": first.client.client_id,
                "items": [
                    {"product_id": first.items[0].product_id, "quantity_ordered": 4, "quantity_delivered": 2},
                    {"product_id": installation.id, "quantity_ordered": 1, "quantity_delivered": 1},
                ],
            },
            actor=user,
        )
        app.deliveries.change_status(second.id, "SHIPPED", actor=user)
        second = app.deliveries.change_status(second.id, "PARTIALLY_DELIVERED", actor=user)

        invoice, notes = app.workflow.delivery_notes_to_invoice([first.id, second.id], actor=user)
        assert [it.quantity for it in invoice.items] == [3, 2, 1]
        assert invoice.subtotal_ht_cent == 5 * 25000 + 8000
        assert invoice.total_ttc_cent == 159600
        assert invoice.delivery_note_ids == [first.id, second.id]
        assert {n.invoice_id for n in notes} == {invoice.id}
        assert app.deliveries.list_notes(invoiced=False) == []

        with pytest.raises(ValidationError) as exc:
            app.workflow.delivery_notes_to_invoice([first.id], actor=user)
        assert exc.value.error_code == "DELIVERY_NOTE_ALREADY_INVOICED"

    def test_mixed_clients_refused(self, app, make_note, other_client, user):
        a = make_note(status="SHIPPED", quantity=1)
        b = make_note(status="SHIPPED", quantity=1, client_id=other_client.id)
        with pytest.raises(ValidationError) as exc:
            app.workflow.delivery_notes_to_invoice([a.id, b.id], actor=user)
        assert exc.value.error_code == "MIXED_CLIENTS"
        assert app.invoices.list_invoices() == []

    def test_cancelled_note_not_invoiceable(self, app, make_note, user):
        note = make_note(status="CANCELLED")
        with pytest.raises(ValidationError) as exc:
            app.workflow.delivery_notes_to_invoice([note.id], actor=user)
        assert exc.value.error_code == "DELIVERY_NOTE_NOT_INVOICEABLE"

    def test_deleting_invoice_releases_notes(self, app, make_note, user):
        note = make_note(status="SHIPPED", quantity=1)
        invoice, _ = app.workflow.delivery_notes_to_invoice([note.id], actor=user)
        app.workflow.delete_invoice(invoice.id, actor=user)
        assert app.deliveries.get(note.id).invoice_id is None
        again, _ = app.workflow.delivery_notes_to_invoice([note.id], actor=user)
        assert again.id != invoice.id

    def test_invoice_service_delete_releases_notes(self, app, make_note, user):
        note = make_note(status="DELIVERED", quantity=1)
        invoice, _ = app.workflow.delivery_notes_to_invoice([note.id], actor=user)
        app.invoices.delete(invoice.id, actor=user)
        assert app.deliveries.get(note.id).invoice_id is None
        assert [n.id for n in app.deliveries.list_notes(invoiced=False)] == [note.id]

from datetime import date

import pytest

from gescom.errors import NotFoundError, ValidationError


def _lines(entry):
    return {ln.account_number: (ln.debit_cent, ln.credit_cent) for ln in entry.lines}


def test_sale_entry_lines(app, make_invoice):
    invoice = make_invoice()
    entry = app.accounting.record_sale(invoice, source_key="vente-1")

    assert entry.transaction_type == "SALE"
    assert entry.related_document_type == "INVOICE"
    assert entry.related_document_id == invoice.id
    assert _lines(entry) == {
        "411000": (120000, 0),
        "707000": (0, 100000),
        "445710": (0, 20000),
    }
    assert app.accounting.record_sale(invoice, source_key="vente-1").id == entry.id


def test_sale_without_vat_has_two_lines(app, client, user):
    invoice = app.invoices.create(
        {"client_id": client.id, "items": [{"product_name": "Location exonérée", "quantity": 1, "unit_price_ht_cent": 5000, "vat_rate": 0}]},
        actor=user,
    )
    entry = app.accounting.record_sale(invoice)
    assert _lines(entry) == {"411000": (5000, 0), "707000": (0, 5000)}


def test_payment_entry(app, make_invoice, user):
    invoice = make_invoice(send=True)
    invoice = app.invoices.record_payment(invoice.id, {"amount_cent": 30000, "method": "CHECK", "paid_on": "2024-04-02"}, actor=user)
    payment = invoice.payments[0]

    entry = app.ledger.find_by_source_key(invoice.pending_effects[-1].id)
    assert entry.transaction_type == "PAYMENT_RECEIVED"
    assert entry.entry_date == date(2024, 4, 2)
    assert _lines(entry) == {"512000": (30000, 0), "411000": (0, 30000)}
    assert "CHECK" in entry.description
    assert app.accounting.build_payment_entry(invoice, payment).lines[0].debit_cent == payment.amount_cent


def test_purchase_entry(app):
    entry = app.accounting.record_purchase({
        "supplier_name": "Audio Distribution",
        "reference": "AD-2024-118",
        "invoice_date": "2024-03-12",
        "total_ht_cent": 50000,
        "total_vat_cent": 10000,
        "total_ttc_cent": 60000,
        "purchase_id": "ach-1",
    })
    assert entry.transaction_type == "PURCHASE"
    assert entry.source_key == "purchase:ach-1"
    assert _lines(entry) == {
        "607000": (50000, 0),
        "445660": (10000, 0),
        "401000": (0, 60000),
    }


def test_purchase_totals_must_match():
    from gescom.models.commands import PurchaseCommand
    from gescom.models.common import parse_model

    with pytest.raises(ValidationError):
        parse_model(PurchaseCommand, {
            "supplier_name": "X", "reference": "R", "invoice_date": "2024-01-01",
            "total_ht_cent": 100, "total_vat_cent": 20, "total_ttc_cent": 130,
        })


def test_missing_account_writes_nothing(app, make_invoice, accountant):
    invoice = make_invoice()
    app.chart.delete(app.chart.get_by_number("707000").id, actor=accountant)

    with pytest.raises(NotFoundError):
        app.accounting.record_sale(invoice)
    assert app.ledger.all_entries() == []


def test_zero_invoice_is_not_posted(app, client, user):
    invoice = app.invoices.create(
        {"client_id": client.id, "items": [{"product_name": "Geste commercial", "quantity": 1, "unit_price_ht_cent": 0}]},
        actor=user,
    )
    with pytest.raises(ValidationError) as exc:
        app.accounting.record_sale(invoice)
    assert exc.value.error_code == "NOTHING_TO_POST"


def test_reverse_posting(app, make_invoice):
    invoice = make_invoice()
    sale = app.accounting.record_sale(invoice, source_key="vente-2")
    reversal = app.accounting.reverse_posting("vente-2", reason="facture annulée", source_key="annul-2")

    assert reversal.reverses_entry_id == sale.id
    assert _lines(reversal) == {"411000": (0, 120000), "707000": (100000, 0), "445710": (20000, 0)}
    # rejouer avec la même clé renvoie la même contre-passation
    assert app.accounting.reverse_posting("vente-2", reason="facture annulée", source_key="annul-2").id == reversal.id

    with pytest.raises(NotFoundError):
        app.accounting.reverse_posting("inconnue", reason="x")

import pytest

from gescom.errors import ValidationError
from gescom.models.common import parse_model, round_cent
from gescom.models.commands import LineItemInput
from gescom.models.line_item import LineItem, compute_document_totals, compute_line_totals, recalc_totals


def _item(**kw):
    base = {"product_name": "Câble XLR 10m", "quantity": 1, "unit_price_ht_cent": 1000, "vat_rate": 20.0}
    base.update(kw)
    return LineItem(**base)


class TestRoundCent:
    @pytest.mark.parametrize("value,expected", [(0.5, 1), (1.5, 2), (2.4999, 2), (2.5, 3), (-0.4, 0)])
    def test_half_up(self, value, expected):
        assert round_cent(value) == expected


class TestLineTotals:
    def test_simple_line(self):
        t = compute_line_totals(_item(quantity=2, unit_price_ht_cent=100000))
        assert t.total_before_discount_cent == 200000
        assert t.discount_cent == 0
        assert t.total_ht_cent == 200000
        assert t.total_vat_cent == 40000
        assert t.total_ttc_cent == 240000

    def test_discount_applied_before_vat(self):
        t = compute_line_totals(_item(quantity=3, unit_price_ht_cent=1999, discount_rate=10))
        # 59.97 ; remise 6.00 (5.997 arrondi) ; HT 53.97 ; TVA 10.79 (10.794)
        assert t.total_before_discount_cent == 5997
        assert t.discount_cent == 600
        assert t.total_ht_cent == 5397
        assert t.total_vat_cent == 1079
        assert t.total_ttc_cent == 6476

    def test_fractional_quantity(self):
        t = compute_line_totals(_item(quantity=1.5, unit_price_ht_cent=333, vat_rate=5.5))
        assert t.total_ht_cent == 500  # 499.5 arrondi au-dessus
        assert t.total_vat_cent == 28  # 27.5 arrondi au-dessus

    def test_zero_vat(self):
        t = compute_line_totals(_item(quantity=4, unit_price_ht_cent=2500, vat_rate=0))
        assert t.total_vat_cent == 0
        assert t.total_ttc_cent == t.total_ht_cent == 10000


class TestDocumentTotals:
    def test_sums_line_totals(self):
        items = [
            _item(quantity=2, unit_price_ht_cent=25000),
            _item(quantity=1, unit_price_ht_cent=8000, discount_rate=50),
        ]
        totals = compute_document_totals(items)
        assert totals.subtotal_before_discount_cent == 58000
        assert totals.total_discount_cent == 4000
        assert totals.subtotal_ht_cent == 54000
        assert totals.total_vat_cent == 10800
        assert totals.total_ttc_cent == 64800

    def test_empty_document(self):
        assert compute_document_totals([]).total_ttc_cent == 0

    def test_recalc_totals_fills_lines(self):
        update = recalc_totals([_item(quantity=2, unit_price_ht_cent=1000)])
        assert update["items"][0].total_ttc_cent == 2400
        assert update["total_ttc_cent"] == 2400


class TestLineInput:
    def test_free_line_requires_name_and_price(self):
        with pytest.raises(ValidationError):
            parse_model(LineItemInput, {"quantity": 1})

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            parse_model(LineItemInput, {"product_id": "p1", "quantity": 0})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_model(LineItemInput, {"product_id": "p1", "quantity": 1, "total_ttc_cent": 5})

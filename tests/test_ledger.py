from datetime import date

import pytest

from gescom.errors import NotFoundError, PermissionDeniedError, ValidationError


def _entry(lines, entry_date="2024-05-10", **extra):
    return {"entry_date": entry_date, "description": "Écriture de test", "lines": lines, **extra}


def _line(number, debit=0, credit=0):
    return {"account_number": number, "debit_cent": debit, "credit_cent": credit}


class TestAppendValidation:
    @pytest.mark.parametrize(
        "lines,code",
        [
            ([_line("512000", debit=1000)], "ENTRY_TOO_FEW_LINES"),
            ([_line("512000", debit=1000, credit=1000), _line("101000", credit=1000)], "ENTRY_LINE_SIDE"),
            ([_line("512000"), _line("101000", credit=1000), _line("411000", debit=1000)], "ENTRY_LINE_SIDE"),
            ([_line("512000", debit=1000), _line("101000", credit=999)], "ENTRY_UNBALANCED"),
        ],
    )
    def test_invalid_entries_rejected(self, app, lines, code):
        with pytest.raises(ValidationError) as exc:
            app.ledger.post(_entry(lines))
        assert exc.value.error_code == code
        assert app.ledger.all_entries() == []

    def test_negative_amount_rejected(self, app):
        with pytest.raises(ValidationError):
            app.ledger.post(_entry([_line("512000", debit=-100), _line("101000", credit=-100)]))

    def test_unknown_account_aborts_entry(self, app):
        with pytest.raises(NotFoundError):
            app.ledger.post(_entry([_line("512000", debit=1000), _line("999999", credit=1000)]))
        assert app.ledger.all_entries() == []

    def test_inactive_account_rejected_for_new_entries(self, app, admin):
        app.chart.deactivate(app.chart.get_by_number("530000").id, actor=admin)
        with pytest.raises(ValidationError) as exc:
            app.ledger.post(_entry([_line("530000", debit=1000), _line("101000", credit=1000)]))
        assert exc.value.error_code == "ACCOUNT_INACTIVE"

    def test_balanced_entry_gets_number_and_snapshot(self, app):
        entry = app.ledger.post(_entry([
            _line("512000", debit=150000),
            _line("101000", credit=100000),
            _line("411000", credit=50000),
        ]))
        assert entry.number == "EJ240000001"
        assert entry.total_debit_cent == entry.total_credit_cent == 150000
        assert [ln.account_number for ln in entry.lines] == ["512000", "101000", "411000"]
        assert entry.lines[0].account_name == "Banque"
        assert app.ledger.get(entry.id).number == entry.number


class TestIdempotenceAndReversal:
    def test_source_key_returns_existing_entry(self, app):
        lines = [_line("512000", debit=1000), _line("101000", credit=1000)]
        first = app.ledger.post(_entry(lines, source_key="effet-1"))
        second = app.ledger.post(_entry(lines, source_key="effet-1"))
        assert first.id == second.id
        assert len(app.ledger.all_entries()) == 1

    def test_reverse_swaps_sides_once(self, app, accountant):
        original = app.ledger.post(_entry([_line("512000", debit=1000), _line("101000", credit=1000)]))
        reversal = app.ledger.reverse(original.id, actor=accountant, entry_date=date(2024, 5, 11), reason="erreur de saisie")

        assert reversal.reverses_entry_id == original.id
        assert [(ln.account_number, ln.debit_cent, ln.credit_cent) for ln in reversal.lines] == [
            ("512000", 0, 1000),
            ("101000", 1000, 0),
        ]
        assert "erreur de saisie" in reversal.description

        with pytest.raises(ValidationError) as exc:
            app.ledger.reverse(original.id, actor=accountant)
        assert exc.value.error_code == "ENTRY_ALREADY_REVERSED"
        with pytest.raises(ValidationError):
            app.ledger.reverse(reversal.id, actor=accountant)

    def test_rejected_duplicate_reversal_keeps_numbering_contiguous(self, app, accountant):
        lines = [_line("512000", debit=1000), _line("101000", credit=1000)]
        original = app.ledger.post(_entry(lines))
        app.ledger.reverse(original.id, actor=accountant, entry_date=date(2024, 5, 11))

        # contre-passation concurrente, passée avant que la première soit écrite
        swapped = [_line("512000", credit=1000), _line("101000", debit=1000)]
        with pytest.raises(ValidationError) as exc:
            app.ledger.post(_entry(swapped, reverses_entry_id=original.id))
        assert exc.value.error_code == "ENTRY_ALREADY_REVERSED"
        assert app.sequences.current("JOURNAL_ENTRY") == 2

        assert app.ledger.post(_entry(lines)).number == "EJ240000003"

    def test_reverse_requires_accounting_role(self, app, user):
        original = app.ledger.post(_entry([_line("512000", debit=1000), _line("101000", credit=1000)]))
        with pytest.raises(PermissionDeniedError):
            app.ledger.reverse(original.id, actor=user)

    def test_no_mutation_api(self, app):
        assert not hasattr(app.ledger, "update")
        assert not hasattr(app.ledger, "delete")


class TestManualEntries:
    def test_accountant_can_post_manual_entry(self, app, accountant):
        entry = app.ledger.create_manual(_entry([_line("512000", debit=500), _line("101000", credit=500)]), actor=accountant)
        assert entry.transaction_type == "MANUAL_JOURNAL"
        assert entry.created_by == accountant.id

    @pytest.mark.parametrize("role", ["USER", "MANAGER"])
    def test_other_roles_refused(self, app, role):
        from gescom.services.authz import Actor

        with pytest.raises(PermissionDeniedError):
            app.ledger.create_manual(
                _entry([_line("512000", debit=500), _line("101000", credit=500)]),
                actor=Actor(id="x", role=role),
            )


class TestQueries:
    @pytest.fixture
    def entries(self, app):
        out = []
        for day, amount in [("2024-05-03", 300), ("2024-05-01", 100), ("2024-05-02", 200), ("2024-05-31", 400), ("2024-06-01", 500)]:
            out.append(app.ledger.post(_entry([_line("512000", debit=amount), _line("101000", credit=amount)], entry_date=day)))
        app.ledger.post(_entry([_line("411000", debit=50), _line("707000", credit=50)], entry_date="2024-05-15", transaction_type="SALE"))
        return out

    def test_query_lines_sorted_and_end_date_inclusive(self, app, entries):
        lines = app.ledger.query_lines(start_date=date(2024, 5, 1), end_date=date(2024, 5, 31), account_number="512000")
        assert [ln.debit_cent for ln in lines] == [100, 200, 300, 400]
        assert all(ln.account_number == "512000" for ln in lines)
        assert [ln.entry_date for ln in lines] == sorted(ln.entry_date for ln in lines)

    def test_query_lines_all_accounts(self, app, entries):
        lines = app.ledger.query_lines(end_date=date(2024, 5, 2))
        assert len(lines) == 4
        assert {ln.account_type for ln in lines} == {"ASSET", "EQUITY"}

    def test_page_and_count_share_filter(self, app, entries):
        query = {"start_date": "2024-05-01", "end_date": "2024-05-31", "transaction_type": "MANUAL_JOURNAL"}
        page = app.ledger.list_entries(query, page=2, page_size=3)
        assert page.total == 4
        assert page.total == app.ledger.count_entries(query)
        assert len(page.items) == 1
        assert page.pages == 2

    def test_search_filter(self, app, entries):
        assert app.ledger.count_entries({"search": "test"}) == 6
        assert app.ledger.count_entries({"search": "inexistant"}) == 0

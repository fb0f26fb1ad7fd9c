import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from gescom.errors import SequenceError
from gescom.services.sequence_service import INVOICE, QUOTE, SequenceGenerator, format_number
from gescom.storage.json_repo import JsonRepository
from gescom.storage.repo import MemoryRepository


class BrokenRepo(MemoryRepository):
    def increment(self, obj_id, field, delta=1):
        raise OSError("disque indisponible")


def _tail(number):
    return int(re.search(r"(\d{6})$", number).group(1))


def test_format_number():
    assert format_number("DEV", 2024, 1, 6) == "DEV24000001"
    assert format_number("FAC", 2031, 42, 7) == "FAC310000042"


def test_numbers_are_per_type_and_monotonic():
    seq = SequenceGenerator(MemoryRepository("sequence"))
    on = date(2024, 3, 1)
    assert seq.next_for(QUOTE, on=on) == "DEV24000001"
    assert seq.next_for(QUOTE, on=on) == "DEV24000002"
    assert seq.next_for(INVOICE, on=on) == "FAC240000001"
    assert seq.current(QUOTE) == 2
    assert seq.current("UNKNOWN") == 0


def test_storage_failure_raises_sequence_error():
    seq = SequenceGenerator(BrokenRepo("sequence"))
    with pytest.raises(SequenceError):
        seq.next("QUOTE", "DEV", 6)


@pytest.mark.parametrize("backend", ["memory", "json"])
def test_concurrent_callers_get_distinct_consecutive_numbers(backend, tmp_path):
    repo = MemoryRepository("sequence") if backend == "memory" else JsonRepository(tmp_path / "sequences.json", "sequence")
    seq = SequenceGenerator(repo)
    n = 120

    with ThreadPoolExecutor(max_workers=8) as pool:
        numbers = list(pool.map(lambda _: seq.next("QUOTE", "DEV", 6), range(n)))

    assert len(set(numbers)) == n
    assert sorted(_tail(x) for x in numbers) == list(range(1, n + 1))
    assert seq.current("QUOTE") == n


def test_document_creation_fails_without_number(app, client, speaker, user):
    app.quotes.sequences = SequenceGenerator(BrokenRepo("sequence"))
    with pytest.raises(SequenceError):
        app.quotes.create({"client_id": client.id, "items": [{"product_id": speaker.id, "quantity": 1}]}, actor=user)
    assert app.quotes.list_quotes() == []

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Union
from uuid import uuid4

from pydantic import BaseModel

from gescom.errors import ConcurrencyError, NotFoundError

Row = Dict[str, Any]


class Repository(Protocol):
    """Interface commune aux dépôts (JSON sur disque ou mémoire)."""

    entity_name: str
    key: str

    def list_all(self) -> List[Row]: ...

    def get_by_id(self, obj_id: Any) -> Optional[Row]: ...

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row: ...

    def update(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row: ...

    def upsert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row: ...

    def delete(self, obj_id: Any) -> bool: ...

    def increment(self, obj_id: Any, field: str, delta: int = 1) -> int: ...

    def compare_and_set(self, obj_id: Any, expected_version: int, changes: Mapping[str, Any]) -> Row: ...

    def transaction(self) -> Any: ...

    def find(self, predicate: Callable[[Row], bool]) -> List[Row]: ...

    def find_one(self, predicate: Callable[[Row], bool]) -> Optional[Row]: ...


class MemoryRepository:
    """
    Dépôt en mémoire, même contrat que JsonRepository.
    Les lignes renvoyées sont des copies : muter un résultat ne modifie pas le dépôt.
    """

    def __init__(self, entity_name: str = "entity", key: str = "id") -> None:
        self.entity_name = entity_name
        self.key = key
        self._rows: List[Row] = []
        self._lock = threading.RLock()

    @staticmethod
    def _to_dict(item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        return copy.deepcopy(dict(item))

    def _index_of(self, rows: List[Row], obj_id: Any) -> int:
        for idx, row in enumerate(rows):
            if str(row.get(self.key)) == str(obj_id):
                return idx
        return -1

    @contextmanager
    def transaction(self) -> Iterator[List[Row]]:
        with self._lock:
            rows = copy.deepcopy(self._rows)
            yield rows
            self._rows = rows

    # ----- CRUD ----- #

    def list_all(self) -> List[Row]:
        with self._lock:
            return copy.deepcopy(self._rows)

    def get_by_id(self, obj_id: Any) -> Optional[Row]:
        with self._lock:
            idx = self._index_of(self._rows, obj_id)
            return copy.deepcopy(self._rows[idx]) if idx >= 0 else None

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        record = self._to_dict(item)
        if not record.get(self.key):
            record[self.key] = uuid4().hex
        with self.transaction() as rows:
            if self._index_of(rows, record[self.key]) >= 0:
                raise ValueError(f"{self.entity_name} with {self.key}={record[self.key]} already exists")
            rows.append(record)
        return copy.deepcopy(record)

    def update(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        record = self._to_dict(item)
        obj_id = record.get(self.key)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{self.key}'")
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx < 0:
                raise NotFoundError(self.entity_name, obj_id)
            rows[idx] = {**rows[idx], **record}
            merged = copy.deepcopy(rows[idx])
        return merged

    def upsert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        try:
            return self.update(item)
        except NotFoundError:
            return self.add(item)

    def delete(self, obj_id: Any) -> bool:
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx >= 0:
                rows.pop(idx)
        return idx >= 0

    # ----- Opérations atomiques ----- #

    def increment(self, obj_id: Any, field: str, delta: int = 1) -> int:
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx < 0:
                rows.append({self.key: obj_id, field: 0})
                idx = len(rows) - 1
            value = int(rows[idx].get(field) or 0) + delta
            rows[idx][field] = value
        return value

    def compare_and_set(self, obj_id: Any, expected_version: int, changes: Mapping[str, Any]) -> Row:
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx < 0:
                raise NotFoundError(self.entity_name, obj_id)
            current = int(rows[idx].get("version") or 0)
            if current != expected_version:
                raise ConcurrencyError(
                    f"{self.entity_name} {obj_id} modifié entre-temps (version {current}, attendue {expected_version})",
                    details={"id": obj_id, "expected": expected_version, "actual": current},
                )
            rows[idx] = {**rows[idx], **copy.deepcopy(dict(changes)), "version": current + 1}
            updated = copy.deepcopy(rows[idx])
        return updated

    # ----- Recherches ----- #

    def find(self, predicate: Callable[[Row], bool]) -> List[Row]:
        return [r for r in self.list_all() if predicate(r)]

    def find_one(self, predicate: Callable[[Row], bool]) -> Optional[Row]:
        for r in self.list_all():
            if predicate(r):
                return r
        return None

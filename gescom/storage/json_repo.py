from __future__ import annotations

import glob
import json
import logging
import shutil
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from gescom.errors import ConcurrencyError, NotFoundError

logger = logging.getLogger(__name__)


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    return str(o)


class JsonRepository:
    """
    Repo JSON générique avec clé primaire configurable.
    - Rotation de backups (backup_enabled, backup_keep)
    - N'écrit pas si le contenu ne change pas (réduction du bruit et des .bak)
    - Opérations atomiques (increment, compare_and_set) sous un verrou unique
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        backup_enabled: bool = False,
        backup_keep: int = 5,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        # RLock : transaction() réentre dans _write_raw
        self._lock = threading.RLock()
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_raw([])

    # ---------------- I/O bas niveau ---------------- #

    def _read_raw(self) -> List[Dict[str, Any]]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            # Fichier corrompu → sauvegarde et repart sur liste vide
            backup = self.filepath.with_suffix(".corrupt.json")
            logger.warning("Fichier %s corrompu, copie vers %s", self.filepath, backup)
            shutil.copy2(self.filepath, backup)
            return []

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # garde les plus récents
        if len(files) > self.backup_keep:
            for old in files[: len(files) - self.backup_keep]:
                Path(old).unlink(missing_ok=True)

    def _write_raw(self, data: Iterable[Mapping[str, Any]]) -> None:
        with self._lock:
            new_dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)

            # si contenu identique → ne rien faire
            if self.filepath.exists() and self.filepath.read_text(encoding="utf-8") == new_dump:
                return

            if self.backup_enabled and self.filepath.exists():
                ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                shutil.copy2(self.filepath, self.filepath.with_suffix(f".{ts}.bak.json"))
                self._rotate_backups()

            # écriture via fichier temporaire puis remplacement
            tmp = self.filepath.with_suffix(".tmp")
            tmp.write_text(new_dump, encoding="utf-8")
            tmp.replace(self.filepath)

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _to_dict(item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        return dict(item)

    def _index_of(self, rows: List[Dict[str, Any]], obj_id: Any) -> int:
        for idx, row in enumerate(rows):
            if str(row.get(self.key)) == str(obj_id):
                return idx
        return -1

    @contextmanager
    def transaction(self) -> Iterator[List[Dict[str, Any]]]:
        """
        Lecture-modification-écriture sous verrou.
        Les lignes modifiées dans le bloc sont écrites à la sortie ; une
        exception dans le bloc n'écrit rien.
        """
        with self._lock:
            rows = self._read_raw()
            yield rows
            self._write_raw(rows)

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Dict[str, Any]]:
        return self._read_raw()

    def get_by_id(self, obj_id: Any) -> Optional[Dict[str, Any]]:
        rows = self._read_raw()
        idx = self._index_of(rows, obj_id)
        return rows[idx] if idx >= 0 else None

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        record = self._to_dict(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        with self.transaction() as rows:
            if self._index_of(rows, record[k]) >= 0:
                raise ValueError(f"{self.entity_name} with {k}={record[k]} already exists")
            rows.append(record)
        return record

    def update(self, item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        record = self._to_dict(item)
        k = self.key
        obj_id = record.get(k)
        if not obj_id:
            raise ValueError(f"Cannot update {self.entity_name} without '{k}'")
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx < 0:
                raise NotFoundError(self.entity_name, obj_id)
            merged = {**rows[idx], **record}
            rows[idx] = merged
        return merged

    def upsert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
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

    # ---------------- Opérations atomiques ---------------- #

    def increment(self, obj_id: Any, field: str, delta: int = 1) -> int:
        """Get-or-create à 0 puis +delta ; retourne la nouvelle valeur."""
        with self.transaction() as rows:
            idx = self._index_of(rows, obj_id)
            if idx < 0:
                rows.append({self.key: obj_id, field: 0})
                idx = len(rows) - 1
            value = int(rows[idx].get(field) or 0) + delta
            rows[idx][field] = value
        return value

    def compare_and_set(self, obj_id: Any, expected_version: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Applique `changes` seulement si `version` vaut encore `expected_version`.
        La version est incrémentée à chaque écriture réussie.
        """
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
            rows[idx] = {**rows[idx], **dict(changes), "version": current + 1}
            updated = rows[idx]
        return updated

    # ---------------- Recherches ---------------- #

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        return [r for r in self._read_raw() if predicate(r)]

    def find_one(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        for r in self._read_raw():
            if predicate(r):
                return r
        return None

from __future__ import annotations

import copy
from threading import Lock
from typing import Any, Callable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)

Record = Dict[str, Any]


class DuplicateValueError(ValueError):
    def __init__(self, field: str, value: Any) -> None:
        super().__init__(f"{field} {value!r} already exists")
        self.field = field
        self.value = value


class InMemoryRepository(Generic[K]):
    """Process-local record store keyed by ``key_field``.

    Records go in and come out as copies, so callers never share mutable state
    with the store.
    """

    def __init__(self, key_field: str = "id", seed: Iterable[Record] = ()) -> None:
        self._key_field = key_field
        self._records: Dict[K, Record] = {}
        self._lock = Lock()
        for record in seed:
            self._records[record[key_field]] = copy.deepcopy(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def list(self, predicate: Optional[Callable[[Record], bool]] = None) -> List[Record]:
        with self._lock:
            records = [copy.deepcopy(record) for record in self._records.values()]
        if predicate is None:
            return records
        return [record for record in records if predicate(record)]

    def get(self, key: K) -> Optional[Record]:
        with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record is not None else None

    def create(self, build: Callable[[int], Record], *, unique: Iterable[str] = ()) -> Record:
        """Insert the record ``build(position)`` where position is the 1-based insert index.

        Fields named in ``unique`` must not repeat a value another record holds.
        """
        with self._lock:
            record = build(len(self._records) + 1)
            key = record[self._key_field]
            if key in self._records:
                raise KeyError(f"record {key!r} already exists")
            self._check_unique(record, unique, exclude=key)
            self._records[key] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def update(self, key: K, changes: Record, *, unique: Iterable[str] = ()) -> Optional[Record]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            self._check_unique(changes, unique, exclude=key)
            record.update(copy.deepcopy(changes))
            return copy.deepcopy(record)

    def modify(self, key: K, mutate: Callable[[Record], None]) -> Optional[Record]:
        """Apply ``mutate`` to the stored record in place, under the store lock."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            mutate(record)
            return copy.deepcopy(record)

    def pop(self, key: K, *, guard: Optional[Callable[[Record], None]] = None) -> Optional[Record]:
        """Remove and return the record; ``guard`` may raise to keep it in place."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if guard is not None:
                guard(record)
            del self._records[key]
            return record

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def _check_unique(self, record: Record, fields: Iterable[str], *, exclude: K) -> None:
        for field in fields:
            if field not in record:
                continue
            value = record[field]
            for other_key, other in self._records.items():
                if other_key != exclude and other.get(field) == value:
                    raise DuplicateValueError(field, value)

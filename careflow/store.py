"""
Persistence collaborator interface and an in-memory reference store.

The core never talks to a database directly.  Services are handed a
``Repository`` per record type and a ``Directory`` for the few lookups
that cross record types (patient profile of a user, pharmacies a user
is assigned to).

Every status change goes through ``Repository.update_if``: the write
only lands if the stored record still matches ``expected``; otherwise
``Conflict`` is raised and nothing is written.  ``Repository.locked``
serialises a read-check-insert sequence on one key (appointment conflict
detection keyed by doctor and by patient, one result per lab order, one
consultation per appointment, one patient profile per user).
``hold_locks`` takes several keys in a fixed order so two callers never
wait on each other crosswise.

``InMemoryRepository`` and ``InMemoryDirectory`` implement both
protocols for tests and single-process deployments.
"""

from __future__ import annotations

import contextlib
import enum
import threading
from typing import (
    Any,
    Callable,
    ContextManager,
    Generic,
    Iterator,
    Optional,
    Protocol,
    TypeVar,
)

from pydantic import BaseModel

from careflow.exceptions import Conflict, NotFound
from careflow.models import PatientProfile, Pharmacy
from careflow.refs import Ref, resolve_id, same_ref

RecordT = TypeVar("RecordT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class Repository(Protocol[RecordT]):
    """Storage for one record type."""

    def find_by_id(self, record_id: Ref) -> Optional[RecordT]: ...

    def find(
        self,
        predicate: Optional[Callable[[RecordT], bool]] = None,
        **filters: Any,
    ) -> list[RecordT]: ...

    def create(self, record: RecordT) -> RecordT: ...

    def update_if(
        self,
        record_id: Ref,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> RecordT: ...

    def locked(self, key: str) -> ContextManager[None]: ...


class Directory(Protocol):
    """Cross-record lookups needed by ownership checks."""

    def patient_profile_for_user(self, user_id: str) -> Optional[str]: ...

    def pharmacies_for_user(self, user_id: str) -> set[str]: ...

    def pharmacy_exists(self, pharmacy_id: Ref) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

def _field_matches(actual: Any, wanted: Any) -> bool:
    if actual == wanted:
        return True
    if isinstance(wanted, (enum.Enum, list, dict, bool, int)) or wanted is None:
        return False
    return same_ref(actual, wanted)


class InMemoryRepository(Generic[RecordT]):
    """Thread-safe dict-backed repository.

    A single re-entrant lock guards the record map, so ``update_if`` is an
    atomic compare-and-swap.  ``locked(key)`` hands out one re-entrant lock
    per key; the lock is dropped once no caller holds or awaits it.
    """

    def __init__(self, records: Optional[list[RecordT]] = None) -> None:
        self._records: dict[str, RecordT] = {}
        self._lock = threading.RLock()
        # key -> [lock, number of callers holding or waiting]
        self._key_locks: dict[str, list[Any]] = {}
        for record in records or []:
            self.create(record)

    def find_by_id(self, record_id: Ref) -> Optional[RecordT]:
        with self._lock:
            return self._records.get(resolve_id(record_id) or "")

    def find(
        self,
        predicate: Optional[Callable[[RecordT], bool]] = None,
        **filters: Any,
    ) -> list[RecordT]:
        """Return records whose fields match ``filters`` and ``predicate``.

        Reference-valued fields match whether stored as an id or an object.
        """
        with self._lock:
            snapshot = list(self._records.values())
        matched = []
        for record in snapshot:
            if not all(_field_matches(getattr(record, k, None), v) for k, v in filters.items()):
                continue
            if predicate is not None and not predicate(record):
                continue
            matched.append(record)
        return matched

    def create(self, record: RecordT) -> RecordT:
        record_id = resolve_id(record)
        if record_id is None:
            raise ValueError("Record has no id.")
        with self._lock:
            if record_id in self._records:
                raise Conflict("A record with this id already exists.")
            self._records[record_id] = record
        return record

    def update_if(
        self,
        record_id: Ref,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> RecordT:
        """Apply ``changes`` only if every ``expected`` field still holds.

        Raises:
            NotFound: If the record does not exist.
            Conflict: If any expected field has changed since it was read.
        """
        key = resolve_id(record_id) or ""
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise NotFound("Record not found.")
            for field, wanted in expected.items():
                if not _field_matches(getattr(current, field, None), wanted):
                    raise Conflict("The record was modified by another request.")
            updated = current.model_copy(update=changes)
            self._records[key] = updated
            return updated

    @contextlib.contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._lock:
            entry = self._key_locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[key]

    def held_keys(self) -> set[str]:
        """Keys currently locked or awaited."""
        with self._lock:
            return set(self._key_locks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@contextlib.contextmanager
def hold_locks(repository: Repository, keys: list[str]) -> Iterator[None]:
    """Hold ``repository.locked`` for every key, acquired in sorted order."""
    with contextlib.ExitStack() as stack:
        for key in sorted(set(keys)):
            stack.enter_context(repository.locked(key))
        yield


class InMemoryDirectory:
    """Directory backed by lists of patient profiles and pharmacies."""

    def __init__(
        self,
        profiles: Optional[list[PatientProfile]] = None,
        pharmacies: Optional[list[Pharmacy]] = None,
    ) -> None:
        self.profiles = list(profiles or [])
        self.pharmacies = list(pharmacies or [])

    def patient_profile_for_user(self, user_id: str) -> Optional[str]:
        for profile in self.profiles:
            if same_ref(profile.user, user_id):
                return profile.id
        return None

    def pharmacies_for_user(self, user_id: str) -> set[str]:
        return {
            pharmacy.id
            for pharmacy in self.pharmacies
            if any(same_ref(u, user_id) for u in pharmacy.assigned_users)
        }

    def pharmacy_exists(self, pharmacy_id: Ref) -> bool:
        wanted = resolve_id(pharmacy_id)
        return any(p.id == wanted and p.is_active for p in self.pharmacies)

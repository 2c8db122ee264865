"""
Ownership reference resolution.

Clinical records point at their owners (doctor, patient profile, pharmacy,
uploader) through references that may arrive either as a bare identifier
or as an already-loaded object, depending on what the caller hydrated.
Every ownership comparison in the core goes through ``resolve_id`` so that
both forms compare equal.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional, Union

Ref = Union[str, Any]
"""A bare identifier or a hydrated object carrying one."""


def resolve_id(ref: Optional[Ref]) -> Optional[str]:
    """Return the canonical string identifier for a reference.

    Accepts ``None``, a bare identifier (``str``/``int``/UUID), a mapping
    with ``id`` or ``_id``, or any object exposing an ``id`` attribute
    (pydantic models included).

    Args:
        ref: The reference to resolve.

    Returns:
        The identifier as a string, or ``None`` if the reference is empty.
    """
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    if isinstance(ref, Mapping):
        for key in ("id", "_id"):
            if ref.get(key) is not None:
                return str(ref[key])
        return None
    ident = getattr(ref, "id", None)
    if ident is not None:
        return str(ident)
    return str(ref)


def same_ref(left: Optional[Ref], right: Optional[Ref]) -> bool:
    """True if both references resolve to the same non-empty identifier."""
    left_id = resolve_id(left)
    return left_id is not None and left_id == resolve_id(right)


def ref_in(ref: Optional[Ref], candidates) -> bool:
    """True if ``ref`` resolves to any of ``candidates``."""
    ref_id = resolve_id(ref)
    if ref_id is None:
        return False
    return any(resolve_id(c) == ref_id for c in candidates)

"""
Merge functions for the staging store.

Each function takes the value currently staged under a key (or None) and
a newly observed fragment, and returns the value to stage. They are pure:
no I/O, no shared state. The staging store applies them inside one
transaction per key.
"""

from typing import Callable, Optional

import orjson

from .errors import StorageCorruption

MergeFunction = Callable[[Optional[bytes], bytes], bytes]

BASE = "base"
BRANCHES = "branches"
PARTNERS = "partners"
TAXES = "taxes"

NAMESPACES = (BASE, BRANCHES, PARTNERS, TAXES)


def replace(existing: Optional[bytes], incoming: bytes) -> bytes:
    """Singleton facets: the incoming value always wins."""
    return incoming


def merge_partners(existing: Optional[bytes], incoming: bytes) -> bytes:
    """
    Append one partner to the staged partner list.

    Partners keep the order in which they were first observed, so N calls
    in file order yield the same list no matter how they were batched.
    """
    partners: list = []
    if existing is not None:
        try:
            partners = orjson.loads(existing)
        except orjson.JSONDecodeError as e:
            raise StorageCorruption(PARTNERS, "", f"undecodable partner list ({e})") from e
        if not isinstance(partners, list):
            raise StorageCorruption(PARTNERS, "", f"expected a list, found {type(partners).__name__}")

    try:
        partner = orjson.loads(incoming)
    except orjson.JSONDecodeError as e:
        raise StorageCorruption(PARTNERS, "", f"undecodable incoming partner ({e})") from e
    if not isinstance(partner, dict):
        raise StorageCorruption(PARTNERS, "", "incoming partner is not a single object")

    partners.append(partner)
    return orjson.dumps(partners)


MERGE_FUNCTIONS: dict[str, MergeFunction] = {
    BASE: replace,
    BRANCHES: replace,
    PARTNERS: merge_partners,
    TAXES: replace,
}


def merge_function_for(namespace: str) -> MergeFunction:
    """Return the merge function registered for a namespace."""
    try:
        return MERGE_FUNCTIONS[namespace]
    except KeyError:
        raise ValueError(f"Unknown staging namespace: {namespace}") from None

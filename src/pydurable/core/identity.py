"""Stable identifiers for operations, payloads and callbacks.

Operation ids are derived from the enclosing context's id and the name the
workflow gives the operation, never from call position. A replay that
discovers names in a different order (dynamic names inside a loop, branches
resolving out of order) still resolves every operation to the same record.
"""

from __future__ import annotations

import xxhash
from uuid_extensions import uuid7

# Unit separator: cannot appear in a sane operation name, so
# ("a", "b\x1fc") and ("a\x1fb", "c") never hash the same input.
_SEPARATOR = "\x1f"


def operation_id(parent_id: str | None, name: str) -> str:
    """
    Compute the id of operation `name` inside the context `parent_id`.

    Example:
        root = operation_id(None, "charge-card")
        child = operation_id(root, "submitter")
    """
    # xxhash: fast, deterministic across processes (unlike hash())
    key = f"{parent_id or ''}{_SEPARATOR}{name}"
    return xxhash.xxh64(key.encode("utf-8")).hexdigest()


def payload_hash(data: bytes) -> int:
    """Hash serialized input so a reused execution name can be checked for conflicts."""
    # Masked to 63 bits for SQLite INTEGER
    return xxhash.xxh64(data).intdigest() & 0x7FFFFFFFFFFFFFFF


def new_execution_id() -> str:
    """Generate a time-ordered execution id."""
    return str(uuid7())


def new_callback_id() -> str:
    """Generate a time-ordered callback token id."""
    return str(uuid7())

"""Leaf hashing for payment events and auxiliary records."""

from __future__ import annotations

from typing import Any, Iterable

from anchorledger.crypto.canonical import canonical_hash
from anchorledger.models.payment import PaymentEvent

# Populated only after the root containing this leaf has been anchored,
# so it can never be part of the leaf.
EXCLUDED_FIELDS = frozenset({"anchoredTxHash"})


def leaf_hash(event: PaymentEvent) -> str:
    """SHA-256 hex over the canonical event record, minus post-hoc fields."""
    record = {
        k: v for k, v in event.to_record().items() if k not in EXCLUDED_FIELDS
    }
    return canonical_hash(record)


def leaf_hashes(events: Iterable[PaymentEvent]) -> list[str]:
    """Leaf hashes in the order given. Never reorders."""
    return [leaf_hash(e) for e in events]


def record_hash(record: dict[str, Any]) -> str:
    """Hash an auxiliary record (contract terms, credit summary, payloads)."""
    return canonical_hash(record)

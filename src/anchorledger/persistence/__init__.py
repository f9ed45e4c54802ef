"""Ledger persistence stores."""

from anchorledger.persistence.store import InMemoryLedgerStore, JsonFileLedgerStore, LedgerStore

__all__ = ["InMemoryLedgerStore", "JsonFileLedgerStore", "LedgerStore"]

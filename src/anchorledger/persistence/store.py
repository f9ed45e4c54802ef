"""Ledger stores — durable owner of the payment events and contract snapshot.

Every access is a whole-collection read or a whole-collection overwrite.
The ledger service holds no durable state; it reads, recomputes and
replaces through this interface.

Stores are constructed once at startup and injected. There is no module
level default instance.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from anchorledger.errors import SchemaVersionError
from anchorledger.models.payment import (
    GENESIS_CONTRACT_SNAPSHOT,
    ContractSnapshotRef,
    PaymentEvent,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerStore(Protocol):
    """Persistence contract consumed by LedgerService."""

    def get_all(self) -> list[PaymentEvent]:
        """All stored events, in stored order."""
        ...

    def replace_all(self, events: Sequence[PaymentEvent]) -> None:
        """Atomically overwrite the full event collection."""
        ...

    def get_contract_snapshot(self) -> ContractSnapshotRef:
        """Current contract snapshot, or the GENESIS fallback."""
        ...

    def set_contract_snapshot(self, ref: ContractSnapshotRef) -> None:
        ...

    def clear(self) -> None:
        """Irreversibly remove every payment event."""
        ...


class InMemoryLedgerStore:
    """Process-local store."""

    def __init__(
        self,
        events: Sequence[PaymentEvent] = (),
        contract_snapshot: Optional[ContractSnapshotRef] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._events: tuple[PaymentEvent, ...] = tuple(events)
        self._snapshot = contract_snapshot

    def get_all(self) -> list[PaymentEvent]:
        with self._lock:
            return list(self._events)

    def replace_all(self, events: Sequence[PaymentEvent]) -> None:
        with self._lock:
            self._events = tuple(events)

    def get_contract_snapshot(self) -> ContractSnapshotRef:
        with self._lock:
            return self._snapshot or GENESIS_CONTRACT_SNAPSHOT

    def set_contract_snapshot(self, ref: ContractSnapshotRef) -> None:
        with self._lock:
            self._snapshot = ref

    def clear(self) -> None:
        with self._lock:
            self._events = ()


class JsonFileLedgerStore:
    """File-backed store: one JSON document per collection.

    Writes go to a temporary file in the same directory and are moved
    into place with ``os.replace``, so readers never see a partial file.
    Records with an unexpected schema tag are rejected on load.
    """

    EVENTS_FILE = "payment_events_v1.json"
    CONTRACT_FILE = "contract_snapshot_v1.json"

    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def events_path(self) -> Path:
        return self._dir / self.EVENTS_FILE

    @property
    def contract_path(self) -> Path:
        return self._dir / self.CONTRACT_FILE

    def get_all(self) -> list[PaymentEvent]:
        with self._lock:
            data = self._read(self.events_path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise SchemaVersionError(f"{self.events_path} does not hold an event list")
        return [PaymentEvent.from_record(item) for item in data]

    def replace_all(self, events: Sequence[PaymentEvent]) -> None:
        records = [e.to_record() for e in events]
        with self._lock:
            self._write(self.events_path, records)
        logger.debug("Stored %d payment events", len(records))

    def get_contract_snapshot(self) -> ContractSnapshotRef:
        with self._lock:
            data = self._read(self.contract_path)
        if data is None:
            return GENESIS_CONTRACT_SNAPSHOT
        return ContractSnapshotRef.from_record(data)

    def set_contract_snapshot(self, ref: ContractSnapshotRef) -> None:
        with self._lock:
            self._write(self.contract_path, ref.to_record())

    def clear(self) -> None:
        with self._lock:
            self.events_path.unlink(missing_ok=True)
        logger.warning("Payment event store cleared: %s", self.events_path)

    @staticmethod
    def _read(path: Path) -> Any:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, data: Any) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

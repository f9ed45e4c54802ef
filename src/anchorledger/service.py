"""Ledger service — orchestrates payment recording and anchoring.

This is the primary programmatic interface. It holds no durable state:
the injected store owns the events and the contract snapshot, and every
operation recomputes what it needs from there.

Submission pipeline:
    Assembling  build the new event with the current contract snapshot
    Ordering    merge with stored events, sort receivedAt ASC, eventId ASC
    Hashing     recompute every leaf from scratch
    Committing  Merkle root → snapshot payload → canonical bytes → submit
    Finalizing  attach the tx id to the new event only, replace the store

Nothing is written before Committing succeeds, so a failure up to and
including the broadcast leaves the store untouched. Errors propagate
unchanged; their ``anchor_status`` says whether the anchor may exist.

Submissions are serialised per contract. The lock is held through
confirmation and persistence, so ledger order equals on-chain order.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol

from anchorledger.config import DEFAULT_CHAIN_ID
from anchorledger.crypto.anchor import AnchorReceipt
from anchorledger.crypto.canonical import canonical_encode
from anchorledger.crypto.leaf import leaf_hashes, record_hash
from anchorledger.crypto.merkle import compute_root
from anchorledger.errors import (
    AnchorMismatchError,
    LedgerError,
    LedgerPersistenceError,
    MalformedPayloadError,
    OrderingInvariantViolation,
)
from anchorledger.models.payment import (
    LEDGER_SNAPSHOT_SCHEMA,
    ORDERING_RULE,
    AuditPackage,
    ContractSnapshotRef,
    Money,
    PaymentEvent,
    PaymentLedgerSnapshot,
    SnapshotSource,
    format_instant,
)
from anchorledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


class AnchorBackend(Protocol):
    """The part of AnchorClient the ledger depends on."""

    def submit(self, payload: bytes) -> AnchorReceipt:
        ...

    def verify(self, tx_id: str) -> bytes:
        ...


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of a successful payment submission."""
    event: PaymentEvent
    snapshot: PaymentLedgerSnapshot
    receipt: AnchorReceipt


@dataclass(frozen=True)
class ContractAnchorResult:
    """Outcome of anchoring a new contract."""
    snapshot: ContractSnapshotRef
    receipt: AnchorReceipt
    anchor_payload: dict[str, Any]


@dataclass(frozen=True)
class AnchorVerification:
    """Comparison of an anchored ledger payload with the current store.

    Only the most recent ledger anchor is expected to match: earlier
    anchors commit to a shorter ledger.
    """
    tx_id: str
    anchored_root: str
    anchored_count: int
    computed_root: str
    computed_count: int

    @property
    def matches(self) -> bool:
        return (
            self.anchored_root == self.computed_root
            and self.anchored_count == self.computed_count
        )


def sort_events(events: Iterable[PaymentEvent]) -> list[PaymentEvent]:
    """Total order: receivedAt ascending, then eventId ascending.

    Raises OrderingInvariantViolation if two events share an eventId.
    """
    ordered = sorted(events, key=lambda e: (e.received_at, e.event_id))
    seen: set[str] = set()
    for event in ordered:
        if event.event_id in seen:
            raise OrderingInvariantViolation(
                f"Duplicate eventId in ledger: {event.event_id}"
            )
        seen.add(event.event_id)
    return ordered


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_event_id() -> str:
    return str(uuid.uuid4())


class LedgerService:
    """Payment ledger facade.

    Usage:
        store = JsonFileLedgerStore(config.data_dir)
        client = AnchorClient.from_config(config, EnvSecretsProvider())
        service = LedgerService(store, client, chain_id=config.chain_id)

        result = service.submit_payment(Money.of("1200.00", "300.00"), "2026-11-01")
        package = service.get_audit_package()
        assert package.root == result.snapshot.payment_ledger_root
    """

    def __init__(
        self,
        store: LedgerStore,
        anchor: AnchorBackend,
        chain_id: int = DEFAULT_CHAIN_ID,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_event_id,
    ) -> None:
        self._store = store
        self._anchor = anchor
        self._chain_id = chain_id
        self._clock = clock
        self._id_factory = id_factory
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def submit_payment(
        self,
        amount: Money,
        due_date: date | str,
        note_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Record a payment, anchor the new ledger root, and persist.

        Returns the new event (with its anchoring tx attached), the
        snapshot that was anchored, and the chain receipt.
        """
        if isinstance(due_date, str):
            due_date = date.fromisoformat(due_date)

        with self._contract_lock() as contract:
            # Assembling
            received_at = self._clock()
            event = PaymentEvent(
                event_id=self._id_factory(),
                contract_id=contract.contract_id,
                payment_id=f"pay_{int(received_at.timestamp() * 1000)}_{uuid.uuid4().hex[:5]}",
                property_id=contract.property_id,
                note_id=note_id,
                contract_anchor_ref=contract,
                scheduled_due_date=due_date,
                received_at=received_at,
                amount=amount,
            )

            # Ordering + Hashing
            ordered = sort_events([*self._store.get_all(), event])
            leaves = leaf_hashes(ordered)

            # Committing
            root = compute_root(leaves)
            snapshot = PaymentLedgerSnapshot(
                contract_id=contract.contract_id,
                chain_id=self._chain_id,
                payment_ledger_root=root,
                included_event_count=len(ordered),
                snapshot_timestamp=format_instant(self._clock()),
            )
            payload = canonical_encode(snapshot.anchor_payload())
            logger.info(
                "Anchoring ledger for %s: %d events, root %s",
                contract.contract_id, len(ordered), root,
            )
            try:
                receipt = self._anchor.submit(payload)
            except LedgerError as e:
                logger.error(
                    "Anchoring failed for event %s (%s): %s",
                    event.event_id, e.anchor_status.value, e,
                )
                raise

            # Finalizing
            anchored_event = event.with_anchor(receipt.tx_id)
            final = [anchored_event if e.event_id == event.event_id else e for e in ordered]
            try:
                self._store.replace_all(final)
            except OSError as e:
                logger.critical(
                    "Anchor %s confirmed but ledger not persisted: %s", receipt.tx_id, e,
                )
                raise LedgerPersistenceError(
                    f"Anchored in {receipt.tx_id} but the ledger could not be stored: {e}",
                    tx_id=receipt.tx_id,
                ) from e

        logger.info("Payment %s anchored in %s", anchored_event.payment_id, receipt.tx_id)
        return SubmissionResult(
            event=anchored_event,
            snapshot=replace(snapshot, ledger_tx_hash=receipt.tx_id),
            receipt=receipt,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def build_audit_package(self) -> AuditPackage:
        """Recompute ordering, leaves and root from the store.

        Never uses a previously computed snapshot.
        """
        ordered = sort_events(self._store.get_all())
        leaves = leaf_hashes(ordered)
        return AuditPackage(
            contract_snapshot=self._store.get_contract_snapshot(),
            events=tuple(ordered),
            leaves=tuple(leaves),
            root=compute_root(leaves),
            ordering_rule=ORDERING_RULE,
        )

    get_audit_package = build_audit_package

    def verify_ledger_anchor(self, tx_id: str) -> AnchorVerification:
        """Read an anchored ledger payload back and compare with the store.

        Does not resubmit anything. Use after a ConfirmationTimeout to
        learn whether the attempted anchor landed.
        """
        raw = self._anchor.verify(tx_id)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedPayloadError(
                f"Transaction {tx_id} does not carry a JSON payload", tx_id=tx_id,
            ) from e
        if not isinstance(payload, dict) or payload.get("schemaVersion") != LEDGER_SNAPSHOT_SCHEMA:
            raise MalformedPayloadError(
                f"Transaction {tx_id} does not carry a ledger snapshot", tx_id=tx_id,
            )

        try:
            anchored_root = str(payload["paymentLedgerRoot"])
            anchored_count = int(payload["includedEventCount"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayloadError(
                f"Ledger snapshot in {tx_id} is incomplete: {e!r}", tx_id=tx_id,
            ) from e

        package = self.build_audit_package()
        result = AnchorVerification(
            tx_id=tx_id,
            anchored_root=anchored_root,
            anchored_count=anchored_count,
            computed_root=package.root,
            computed_count=package.included_event_count,
        )
        logger.info("Anchor %s %s current ledger", tx_id, "matches" if result.matches else "differs from")
        return result

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def contract_snapshot(self) -> ContractSnapshotRef:
        return self._store.get_contract_snapshot()

    def anchor_contract(
        self,
        contract_terms: dict[str, Any],
        credit_summary: dict[str, Any],
        property_id: str,
        contract_id: Optional[str] = None,
    ) -> ContractAnchorResult:
        """Anchor a new contract and make it the live snapshot.

        Hashes the terms and credit summary, anchors a payload carrying
        both hashes, reads it back from the chain and compares bytes. On
        a match the LIVE snapshot replaces the current one and the payment
        ledger starts empty for the new contract.
        """
        contract_hash = record_hash(contract_terms)
        credit_hash = record_hash(credit_summary)
        anchored_at = format_instant(self._clock())
        payload = {
            "version": "1.0",
            "algo": "sha256",
            "chainId": self._chain_id,
            "contractHash": contract_hash,
            "creditHash": credit_hash,
            "timestamp": anchored_at,
            "propertyId": property_id,
        }
        encoded = canonical_encode(payload)

        with self._contract_lock():
            receipt = self._anchor.submit(encoded)
            on_chain = self._anchor.verify(receipt.tx_id)
            if on_chain != encoded:
                raise AnchorMismatchError(
                    f"Payload read back from {receipt.tx_id} differs from the one sent",
                    tx_id=receipt.tx_id,
                )

            ref = ContractSnapshotRef(
                contract_id=contract_id or f"contract_{uuid.uuid4().hex[:12]}",
                property_id=property_id,
                chain_id=self._chain_id,
                contract_hash=contract_hash,
                credit_hash=credit_hash,
                anchor_hash=record_hash(payload),
                contract_tx_hash=receipt.tx_id,
                anchored_at=anchored_at,
                source=SnapshotSource.LIVE,
            )
            # New-contract submitters must never see the old events
            self._store.clear()
            self._store.set_contract_snapshot(ref)

        logger.info("Contract %s anchored in %s", ref.contract_id, receipt.tx_id)
        return ContractAnchorResult(snapshot=ref, receipt=receipt, anchor_payload=payload)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def clear_ledger(self) -> None:
        """Irreversibly delete every payment event. Test/reset only."""
        with self._contract_lock() as contract:
            logger.warning("Clearing payment ledger for %s", contract.contract_id)
            self._store.clear()

    def status(self) -> dict[str, Any]:
        package = self.build_audit_package()
        latest = next(
            (e.anchored_tx_hash for e in reversed(package.events) if e.anchored_tx_hash),
            None,
        )
        return {
            "contract_id": package.contract_snapshot.contract_id,
            "contract_source": package.contract_snapshot.source.value,
            "chain_id": self._chain_id,
            "event_count": package.included_event_count,
            "ledger_root": package.root,
            "latest_anchor_tx": latest,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @contextmanager
    def _contract_lock(self) -> Iterator[ContractSnapshotRef]:
        """Hold the current contract's lock; yields the snapshot read under it."""
        while True:
            contract_id = self._store.get_contract_snapshot().contract_id
            with self._locks_guard:
                lock = self._locks.setdefault(contract_id, threading.Lock())
            with lock:
                contract = self._store.get_contract_snapshot()
                # The live contract changed while waiting; lock the new one
                if contract.contract_id != contract_id:
                    continue
                yield contract
                return

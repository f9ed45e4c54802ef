"""Tests for the ledger service — ordering, anchoring, audit and recovery."""

from __future__ import annotations

import json
import threading
from datetime import date, timedelta
from typing import Callable, Optional, Sequence

import pytest

from anchorledger.crypto.leaf import leaf_hash, record_hash
from anchorledger.crypto.merkle import EMPTY_ROOT, hash_pair
from anchorledger.errors import (
    AnchorMismatchError,
    AnchorStatus,
    ConfirmationTimeout,
    LedgerPersistenceError,
    MalformedPayloadError,
    OrderingInvariantViolation,
    SubmissionError,
)
from anchorledger.models.payment import (
    GENESIS_CONTRACT_SNAPSHOT,
    AuditPackage,
    ContractSnapshotRef,
    Money,
    PaymentEvent,
    SnapshotSource,
)
from anchorledger.persistence.store import InMemoryLedgerStore
from anchorledger.service import LedgerService, sort_events

from conftest import T1, FakeAnchor, StepClock


class BrokenStore(InMemoryLedgerStore):
    def replace_all(self, events: Sequence[PaymentEvent]) -> None:
        raise OSError("disk full")


class HookedStore(InMemoryLedgerStore):
    """Runs a callback once, right after a contract snapshot is installed."""

    def __init__(self) -> None:
        super().__init__()
        self.after_set: Optional[Callable[[], None]] = None

    def set_contract_snapshot(self, ref: ContractSnapshotRef) -> None:
        super().set_contract_snapshot(ref)
        hook, self.after_set = self.after_set, None
        if hook is not None:
            hook()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def anchor() -> FakeAnchor:
    return FakeAnchor()


@pytest.fixture
def service(store: InMemoryLedgerStore, anchor: FakeAnchor) -> LedgerService:
    return LedgerService(store, anchor, chain_id=5003, clock=StepClock())


AMOUNT = Money.of("1200.00", "300.00")


class TestOrdering:
    def test_tie_broken_by_event_id(self, make_event) -> None:
        x = make_event("b", received_at=T1)
        y = make_event("a", received_at=T1)
        assert sort_events([x, y]) == [y, x]

    def test_received_at_first(self, make_event) -> None:
        early = make_event("z", received_at=T1)
        late = make_event("a", received_at=T1 + timedelta(microseconds=1))
        assert sort_events([late, early]) == [early, late]

    def test_duplicate_event_id_aborts(self, make_event) -> None:
        with pytest.raises(OrderingInvariantViolation):
            sort_events([make_event("a"), make_event("a", principal="1.00")])


class TestAuditPackage:
    def test_tie_break_root(self, make_event) -> None:
        x = make_event("b", received_at=T1)
        y = make_event("a", received_at=T1)
        service = LedgerService(InMemoryLedgerStore([x, y]), FakeAnchor())

        package = service.build_audit_package()
        assert [e.event_id for e in package.events] == ["a", "b"]
        assert package.root == hash_pair(leaf_hash(y), leaf_hash(x))

    def test_single_event_root_is_its_leaf(self, make_event) -> None:
        z = make_event("z")
        service = LedgerService(InMemoryLedgerStore([z]), FakeAnchor())
        assert service.build_audit_package().root == leaf_hash(z)

    def test_independent_of_storage_order(self, make_event) -> None:
        events = [make_event(str(i), received_at=T1 + timedelta(seconds=i % 3)) for i in range(6)]
        a = LedgerService(InMemoryLedgerStore(events), FakeAnchor()).build_audit_package()
        b = LedgerService(InMemoryLedgerStore(events[::-1]), FakeAnchor()).build_audit_package()
        assert a.root == b.root
        assert a.leaves == b.leaves

    def test_empty_ledger(self, service: LedgerService) -> None:
        package = service.get_audit_package()
        assert package.included_event_count == 0
        assert package.root == EMPTY_ROOT
        assert package.contract_snapshot == GENESIS_CONTRACT_SNAPSHOT

    def test_leaves_match_events(self, make_event) -> None:
        events = [make_event("a"), make_event("b")]
        package = LedgerService(InMemoryLedgerStore(events), FakeAnchor()).build_audit_package()
        assert isinstance(package, AuditPackage)
        assert list(package.leaves) == [leaf_hash(e) for e in package.events]

    def test_round_trip_is_stable(self, service: LedgerService) -> None:
        service.submit_payment(AMOUNT, "2026-11-01")
        service.submit_payment(AMOUNT, "2026-12-01")

        first = service.get_audit_package()
        second = service.get_audit_package()
        assert first.root == second.root
        assert first.leaves == second.leaves
        assert first.included_event_count == second.included_event_count == 2

    def test_duplicate_in_store_surfaces(self, make_event) -> None:
        store = InMemoryLedgerStore([make_event("a"), make_event("a")])
        with pytest.raises(OrderingInvariantViolation):
            LedgerService(store, FakeAnchor()).build_audit_package()


class TestSubmitPayment:
    def test_anchors_and_persists(self, service: LedgerService, store, anchor) -> None:
        result = service.submit_payment(AMOUNT, date(2026, 11, 1))

        assert result.event.anchored_tx_hash == result.receipt.tx_id
        assert result.snapshot.ledger_tx_hash == result.receipt.tx_id
        assert result.snapshot.included_event_count == 1
        assert store.get_all() == [result.event]
        assert len(anchor.payloads) == 1

    def test_event_fields(self, service: LedgerService) -> None:
        event = service.submit_payment(AMOUNT, "2026-11-01", note_id="note_7").event
        assert event.contract_id == GENESIS_CONTRACT_SNAPSHOT.contract_id
        assert event.property_id == GENESIS_CONTRACT_SNAPSHOT.property_id
        assert event.contract_anchor_ref == GENESIS_CONTRACT_SNAPSHOT
        assert event.scheduled_due_date == date(2026, 11, 1)
        assert event.received_at == T1
        assert event.note_id == "note_7"
        assert event.payment_id.startswith("pay_")
        assert event.amount == AMOUNT

    def test_anchored_payload(self, service: LedgerService, anchor) -> None:
        result = service.submit_payment(AMOUNT, "2026-11-01")
        payload = json.loads(anchor.payloads[0])

        assert payload["paymentLedgerRoot"] == result.snapshot.payment_ledger_root
        assert payload["includedEventCount"] == 1
        assert payload["contractId"] == GENESIS_CONTRACT_SNAPSHOT.contract_id
        assert payload["chainId"] == 5003
        assert payload["orderingRule"] == "receivedAt ASC, then eventId ASC"
        assert "ledgerTxHash" not in payload

    def test_audit_root_equals_anchored_root(self, service: LedgerService) -> None:
        """Attaching the tx hash afterwards must not move the root."""
        service.submit_payment(AMOUNT, "2026-11-01")
        last = service.submit_payment(AMOUNT, "2026-12-01")
        assert service.get_audit_package().root == last.snapshot.payment_ledger_root

    def test_only_new_event_gets_tx(self, store, anchor, make_event) -> None:
        old_anchored = make_event("old-1", received_at=T1 - timedelta(days=30), anchored_tx_hash="0xold")
        old_plain = make_event("old-2", received_at=T1 - timedelta(days=29))
        store.replace_all([old_anchored, old_plain])
        service = LedgerService(store, anchor, clock=StepClock())

        result = service.submit_payment(AMOUNT, "2026-11-01")

        by_id = {e.event_id: e for e in store.get_all()}
        assert by_id["old-1"].anchored_tx_hash == "0xold"
        assert by_id["old-2"].anchored_tx_hash is None
        assert by_id[result.event.event_id].anchored_tx_hash == result.receipt.tx_id

    def test_store_kept_in_canonical_order(self, store, anchor, make_event) -> None:
        store.replace_all([make_event("late", received_at=T1 - timedelta(days=1)),
                           make_event("early", received_at=T1 - timedelta(days=2))])
        service = LedgerService(store, anchor, clock=StepClock())
        service.submit_payment(AMOUNT, "2026-11-01")
        ids = [e.event_id for e in store.get_all()]
        assert ids[:2] == ["early", "late"]

    def test_rejected_broadcast_leaves_store_untouched(self, service, store, anchor, make_event) -> None:
        store.replace_all([make_event("a")])
        anchor.fail_with = SubmissionError("nonce too low")

        with pytest.raises(SubmissionError) as exc:
            service.submit_payment(AMOUNT, "2026-11-01")

        assert exc.value.anchor_status == AnchorStatus.NOT_ANCHORED
        assert [e.event_id for e in store.get_all()] == ["a"]

    def test_confirmation_timeout_is_unknown(self, service, store, anchor) -> None:
        anchor.fail_with = ConfirmationTimeout("no receipt", tx_id="0x" + "9" * 64)

        with pytest.raises(ConfirmationTimeout) as exc:
            service.submit_payment(AMOUNT, "2026-11-01")

        assert exc.value.anchor_status == AnchorStatus.UNKNOWN
        assert exc.value.tx_id == "0x" + "9" * 64
        assert store.get_all() == []

    def test_persistence_failure_reports_anchor(self, anchor) -> None:
        service = LedgerService(BrokenStore(), anchor, clock=StepClock())

        with pytest.raises(LedgerPersistenceError) as exc:
            service.submit_payment(AMOUNT, "2026-11-01")

        assert exc.value.anchor_status == AnchorStatus.ANCHORED
        assert exc.value.tx_id == f"0x{1:064x}"

    def test_duplicate_id_aborts_before_submit(self, store, anchor, make_event) -> None:
        store.replace_all([make_event("evt-1")])
        service = LedgerService(store, anchor, clock=StepClock(), id_factory=lambda: "evt-1")

        with pytest.raises(OrderingInvariantViolation):
            service.submit_payment(AMOUNT, "2026-11-01")
        assert anchor.payloads == []

    def test_concurrent_submissions_serialised(self, store) -> None:
        anchor = FakeAnchor(delay=0.05)
        service = LedgerService(store, anchor)
        errors: list[Exception] = []

        def submit() -> None:
            try:
                service.submit_payment(AMOUNT, "2026-11-01")
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        counts = [json.loads(p)["includedEventCount"] for p in anchor.payloads]
        assert counts == [1, 2, 3]
        assert len(store.get_all()) == 3


class TestVerifyLedgerAnchor:
    def test_latest_anchor_matches(self, service: LedgerService) -> None:
        service.submit_payment(AMOUNT, "2026-11-01")
        latest = service.submit_payment(AMOUNT, "2026-12-01")

        result = service.verify_ledger_anchor(latest.receipt.tx_id)
        assert result.matches
        assert result.anchored_count == result.computed_count == 2

    def test_earlier_anchor_differs(self, service: LedgerService) -> None:
        first = service.submit_payment(AMOUNT, "2026-11-01")
        service.submit_payment(AMOUNT, "2026-12-01")

        result = service.verify_ledger_anchor(first.receipt.tx_id)
        assert not result.matches
        assert result.anchored_count == 1
        assert result.computed_count == 2

    def test_non_json_payload(self, service: LedgerService, anchor) -> None:
        anchor.onchain["0x1"] = b"\xff\xfe"
        with pytest.raises(MalformedPayloadError):
            service.verify_ledger_anchor("0x1")

    def test_incomplete_ledger_snapshot(self, service: LedgerService, anchor) -> None:
        anchor.onchain["0x1"] = b'{"schemaVersion":"payment_ledger_snapshot_v1"}'
        with pytest.raises(MalformedPayloadError, match="incomplete"):
            service.verify_ledger_anchor("0x1")

    def test_non_numeric_count(self, service: LedgerService, anchor) -> None:
        anchor.onchain["0x1"] = (
            b'{"schemaVersion":"payment_ledger_snapshot_v1",'
            b'"paymentLedgerRoot":"ab","includedEventCount":"many"}'
        )
        with pytest.raises(MalformedPayloadError):
            service.verify_ledger_anchor("0x1")

    def test_other_payload_kind(self, service: LedgerService, anchor) -> None:
        anchor.onchain["0x1"] = b'{"version":"1.0","algo":"sha256"}'
        with pytest.raises(MalformedPayloadError):
            service.verify_ledger_anchor("0x1")


class TestAnchorContract:
    TERMS = {"rate": "6.50", "termMonths": 360, "principal": "450000.00"}
    CREDIT = {"score": 742, "dti": "0.31"}

    def test_live_snapshot_replaces_genesis(self, service: LedgerService, store) -> None:
        result = service.anchor_contract(self.TERMS, self.CREDIT, "prop_1", contract_id="contract_new")

        ref = result.snapshot
        assert ref.source == SnapshotSource.LIVE
        assert ref.contract_id == "contract_new"
        assert ref.property_id == "prop_1"
        assert ref.contract_hash == record_hash(self.TERMS)
        assert ref.credit_hash == record_hash(self.CREDIT)
        assert ref.anchor_hash == record_hash(result.anchor_payload)
        assert ref.contract_tx_hash == result.receipt.tx_id
        assert store.get_contract_snapshot() == ref

    def test_payload_shape(self, service: LedgerService, anchor) -> None:
        result = service.anchor_contract(self.TERMS, self.CREDIT, "prop_1")
        payload = json.loads(anchor.payloads[0])
        assert payload == result.anchor_payload
        assert payload["version"] == "1.0"
        assert payload["algo"] == "sha256"
        assert payload["chainId"] == 5003
        assert payload["propertyId"] == "prop_1"

    def test_generated_contract_id(self, service: LedgerService) -> None:
        ref = service.anchor_contract(self.TERMS, self.CREDIT, "prop_1").snapshot
        assert ref.contract_id.startswith("contract_")

    def test_ledger_restarts_for_new_contract(self, service: LedgerService, store) -> None:
        service.submit_payment(AMOUNT, "2026-11-01")
        ref = service.anchor_contract(self.TERMS, self.CREDIT, "prop_1").snapshot
        assert store.get_all() == []

        event = service.submit_payment(AMOUNT, "2026-11-01").event
        assert event.contract_id == ref.contract_id
        assert event.contract_anchor_ref == ref

    def test_payment_during_switch_keeps_its_event(self, anchor, make_event) -> None:
        """A payment landing as the new contract appears starts the new ledger."""
        store = HookedStore()
        store.replace_all([make_event("old")])
        service = LedgerService(store, anchor, clock=StepClock())
        raced: list = []
        store.after_set = lambda: raced.append(service.submit_payment(AMOUNT, "2026-11-01"))

        ref = service.anchor_contract(self.TERMS, self.CREDIT, "prop_1").snapshot

        assert len(raced) == 1
        result = raced[0]
        assert result.event.contract_id == ref.contract_id
        assert result.snapshot.included_event_count == 1
        assert store.get_all() == [result.event]
        assert service.verify_ledger_anchor(result.receipt.tx_id).matches

    def test_read_back_mismatch(self, service: LedgerService, store, anchor, make_event) -> None:
        store.replace_all([make_event("a")])
        anchor.tamper = True

        with pytest.raises(AnchorMismatchError) as exc:
            service.anchor_contract(self.TERMS, self.CREDIT, "prop_1")

        assert exc.value.anchor_status == AnchorStatus.UNKNOWN
        assert store.get_contract_snapshot() == GENESIS_CONTRACT_SNAPSHOT
        assert len(store.get_all()) == 1


class TestAdministration:
    def test_clear_ledger(self, service: LedgerService, store) -> None:
        service.submit_payment(AMOUNT, "2026-11-01")
        service.clear_ledger()
        assert store.get_all() == []
        assert service.get_audit_package().root == EMPTY_ROOT

    def test_status(self, service: LedgerService) -> None:
        assert service.status()["latest_anchor_tx"] is None

        result = service.submit_payment(AMOUNT, "2026-11-01")
        status = service.status()
        assert status["contract_id"] == GENESIS_CONTRACT_SNAPSHOT.contract_id
        assert status["contract_source"] == "GENESIS"
        assert status["chain_id"] == 5003
        assert status["event_count"] == 1
        assert status["ledger_root"] == result.snapshot.payment_ledger_root
        assert status["latest_anchor_tx"] == result.receipt.tx_id

    def test_contract_snapshot(self, service: LedgerService) -> None:
        assert service.contract_snapshot() == GENESIS_CONTRACT_SNAPSHOT

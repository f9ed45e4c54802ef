"""Shared fixtures for ledger tests."""

from __future__ import annotations

import threading
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from anchorledger.crypto.anchor import AnchorReceipt
from anchorledger.errors import LedgerError
from anchorledger.models.payment import GENESIS_CONTRACT_SNAPSHOT, Money, PaymentEvent


T1 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_event() -> Callable[..., PaymentEvent]:
    """Factory for payment events with sensible defaults."""

    def _make(
        event_id: str = "evt-1",
        received_at: datetime = T1,
        principal: str = "1000.00",
        interest: str = "250.00",
        anchored_tx_hash: Optional[str] = None,
    ) -> PaymentEvent:
        return PaymentEvent(
            event_id=event_id,
            contract_id=GENESIS_CONTRACT_SNAPSHOT.contract_id,
            payment_id=f"pay_{event_id}",
            property_id=GENESIS_CONTRACT_SNAPSHOT.property_id,
            contract_anchor_ref=GENESIS_CONTRACT_SNAPSHOT,
            scheduled_due_date=date(2026, 3, 1),
            received_at=received_at,
            amount=Money.of(principal, interest),
            anchored_tx_hash=anchored_tx_hash,
        )

    return _make


class FakeAnchor:
    """Stands in for AnchorClient: keeps submitted payloads as if on chain."""

    def __init__(self, delay: float = 0.0) -> None:
        self.payloads: list[bytes] = []
        self.onchain: dict[str, bytes] = {}
        self.fail_with: Optional[LedgerError] = None
        self.tamper = False
        self.delay = delay
        self._lock = threading.Lock()

    def submit(self, payload: bytes) -> AnchorReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.payloads.append(payload)
            n = len(self.payloads)
            tx_id = f"0x{n:064x}"
            self.onchain[tx_id] = payload
        return AnchorReceipt(
            tx_id=tx_id,
            signer_address="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
            network_name="test",
            chain_id=5003,
            block_number=n,
        )

    def verify(self, tx_id: str) -> bytes:
        data = self.onchain[tx_id]
        return data + b" " if self.tamper else data


class StepClock:
    """Deterministic clock advancing a fixed step per call."""

    def __init__(self, start: datetime = T1, step: timedelta = timedelta(seconds=1)) -> None:
        self._now = start
        self._step = step

    def __call__(self) -> datetime:
        now = self._now
        self._now += self._step
        return now

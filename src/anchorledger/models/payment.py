"""Payment ledger record models.

Every persisted record carries an explicit schema tag. Any change to a
record's field set requires a new tag; records with an unknown tag are
rejected on load rather than reinterpreted.

Records convert to and from camelCase wire dicts via ``to_record`` and
``from_record``. Wire dicts contain only plain JSON types so they can be
canonical-encoded without any implicit conversion.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from anchorledger.errors import SchemaVersionError


PAYMENT_EVENT_SCHEMA = "payment_event_v1"
LEDGER_SNAPSHOT_SCHEMA = "payment_ledger_snapshot_v1"
CONTRACT_SNAPSHOT_SCHEMA = "contract_snapshot_ref_v1"

ORDERING_RULE = "receivedAt ASC, then eventId ASC"

# Minor-unit precision per currency. Anything unlisted uses two places.
CURRENCY_PRECISION: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "USDC": 6,
}


def format_instant(ts: datetime) -> str:
    """UTC ISO-8601 with microseconds and a Z suffix (lossless round trip)."""
    if ts.tzinfo is None:
        raise ValueError(f"Instant must be timezone-aware: {ts!r}")
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant (Z or offset) into an aware UTC datetime."""
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise ValueError(f"Instant has no timezone: {value!r}")
    return ts.astimezone(timezone.utc)


def _require_schema(data: dict[str, Any], expected: str) -> None:
    found = data.get("schemaVersion")
    if found != expected:
        raise SchemaVersionError(
            f"Expected schemaVersion {expected!r}, found {found!r}"
        )


class SnapshotSource(str, enum.Enum):
    """Where a contract snapshot reference came from."""
    GENESIS = "GENESIS"  # Built-in fallback before any live anchoring
    LIVE = "LIVE"


class PaymentEventType(str, enum.Enum):
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"


class PaymentMethod(str, enum.Enum):
    PAY_NOW = "PAY_NOW"


class PaymentStatus(str, enum.Enum):
    PAID = "PAID"


@dataclass(frozen=True)
class Money:
    """An amount split into principal and interest.

    Invariant: principal + interest == total, no component is negative,
    and none carries more decimal places than the currency allows.
    """
    principal: Decimal
    interest: Decimal
    total: Decimal
    currency: str = "USD"

    def __post_init__(self) -> None:
        if not self.currency:
            raise ValueError("currency is required")
        for name in ("principal", "interest", "total"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                try:
                    value = Decimal(str(value))
                except InvalidOperation as e:
                    raise ValueError(f"Invalid {name}: {value!r}") from e
            if not value.is_finite():
                raise ValueError(f"{name} must be finite, got {value}")
            try:
                quantized = value.quantize(self.quantum)
            except InvalidOperation as e:
                raise ValueError(f"{name} is out of range: {value}") from e
            if quantized != value:
                raise ValueError(
                    f"{name} has more decimal places than {self.currency} allows: {value}"
                )
            object.__setattr__(self, name, quantized)
        if self.principal < 0 or self.interest < 0 or self.total < 0:
            raise ValueError(
                f"Money components must be non-negative: "
                f"{self.principal} + {self.interest} = {self.total}"
            )
        if self.principal + self.interest != self.total:
            raise ValueError(
                f"principal + interest != total: "
                f"{self.principal} + {self.interest} != {self.total}"
            )

    @property
    def quantum(self) -> Decimal:
        places = CURRENCY_PRECISION.get(self.currency, 2)
        return Decimal(1).scaleb(-places)

    @classmethod
    def of(cls, principal: Any, interest: Any, currency: str = "USD") -> Money:
        """Build from principal and interest, deriving the total."""
        try:
            p = Decimal(str(principal))
            i = Decimal(str(interest))
            total = p + i
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {principal!r} + {interest!r}") from e
        return cls(principal=p, interest=i, total=total, currency=currency)

    def to_record(self) -> dict[str, Any]:
        return {
            "principal": str(self.principal),
            "interest": str(self.interest),
            "total": str(self.total),
            "currency": self.currency,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Money:
        return cls(
            principal=Decimal(str(data["principal"])),
            interest=Decimal(str(data["interest"])),
            total=Decimal(str(data["total"])),
            currency=data["currency"],
        )


@dataclass(frozen=True)
class ContractSnapshotRef:
    """Immutable reference to a previously anchored contract."""
    contract_id: str
    property_id: str
    chain_id: int
    contract_hash: str
    credit_hash: str
    anchor_hash: str
    contract_tx_hash: str
    anchored_at: str
    source: SnapshotSource
    schema_version: str = CONTRACT_SNAPSHOT_SCHEMA

    def to_record(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "contractId": self.contract_id,
            "propertyId": self.property_id,
            "chainId": self.chain_id,
            "contractHash": self.contract_hash,
            "creditHash": self.credit_hash,
            "anchorHash": self.anchor_hash,
            "contractTxHash": self.contract_tx_hash,
            "anchoredAt": self.anchored_at,
            "source": self.source.value,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> ContractSnapshotRef:
        _require_schema(data, CONTRACT_SNAPSHOT_SCHEMA)
        return cls(
            contract_id=data["contractId"],
            property_id=data["propertyId"],
            chain_id=int(data["chainId"]),
            contract_hash=data["contractHash"],
            credit_hash=data["creditHash"],
            anchor_hash=data["anchorHash"],
            contract_tx_hash=data["contractTxHash"],
            anchored_at=data["anchoredAt"],
            source=SnapshotSource(data["source"]),
        )


# Fallback used until a live contract has been anchored.
GENESIS_CONTRACT_SNAPSHOT = ContractSnapshotRef(
    contract_id="contract_genesis_001",
    property_id="prop_5931_abernathy_dr",
    chain_id=5003,
    contract_hash="0" * 64,
    credit_hash="0" * 64,
    anchor_hash="0" * 64,
    contract_tx_hash="0x" + "0" * 64,
    anchored_at="2025-10-01T10:00:00.000000Z",
    source=SnapshotSource.GENESIS,
)


@dataclass(frozen=True)
class PaymentEvent:
    """A single payment in the append-only ledger.

    Created once. The only permitted change is attaching the anchoring
    transaction hash via ``with_anchor``, which is excluded from the
    leaf hash.
    """
    event_id: str
    contract_id: str
    payment_id: str
    property_id: str
    contract_anchor_ref: ContractSnapshotRef
    scheduled_due_date: date
    received_at: datetime
    amount: Money
    note_id: Optional[str] = None
    event_type: PaymentEventType = PaymentEventType.PAYMENT_RECEIVED
    method: PaymentMethod = PaymentMethod.PAY_NOW
    status_after: PaymentStatus = PaymentStatus.PAID
    anchored_tx_hash: Optional[str] = None
    schema_version: str = PAYMENT_EVENT_SCHEMA

    def __post_init__(self) -> None:
        if not self.event_id:
            raise ValueError("event_id is required")
        if self.received_at.tzinfo is None:
            raise ValueError("received_at must be timezone-aware")

    def with_anchor(self, tx_hash: str) -> PaymentEvent:
        """Return a copy with the anchoring transaction attached."""
        if self.anchored_tx_hash is not None:
            raise ValueError(
                f"Event {self.event_id} already anchored in {self.anchored_tx_hash}"
            )
        return replace(self, anchored_tx_hash=tx_hash)

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "contractId": self.contract_id,
            "paymentId": self.payment_id,
            "propertyId": self.property_id,
            "noteId": self.note_id,
            "contractAnchorRef": self.contract_anchor_ref.to_record(),
            "eventType": self.event_type.value,
            "scheduledDueDate": self.scheduled_due_date.isoformat(),
            "receivedAt": format_instant(self.received_at),
            "amount": self.amount.to_record(),
            "method": self.method.value,
            "eventId": self.event_id,
            "statusAfter": self.status_after.value,
        }
        if self.anchored_tx_hash is not None:
            record["anchoredTxHash"] = self.anchored_tx_hash
        return record

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> PaymentEvent:
        _require_schema(data, PAYMENT_EVENT_SCHEMA)
        return cls(
            event_id=data["eventId"],
            contract_id=data["contractId"],
            payment_id=data["paymentId"],
            property_id=data["propertyId"],
            note_id=data.get("noteId"),
            contract_anchor_ref=ContractSnapshotRef.from_record(
                data["contractAnchorRef"]
            ),
            event_type=PaymentEventType(data["eventType"]),
            scheduled_due_date=date.fromisoformat(data["scheduledDueDate"]),
            received_at=parse_instant(data["receivedAt"]),
            amount=Money.from_record(data["amount"]),
            method=PaymentMethod(data["method"]),
            status_after=PaymentStatus(data["statusAfter"]),
            anchored_tx_hash=data.get("anchoredTxHash"),
        )


@dataclass(frozen=True)
class PaymentLedgerSnapshot:
    """Summary of the full ledger at one point in time.

    Derived data: always recomputable from the event store.
    """
    contract_id: str
    chain_id: int
    payment_ledger_root: str
    included_event_count: int
    snapshot_timestamp: str
    ledger_tx_hash: Optional[str] = None
    ordering_rule: str = ORDERING_RULE
    schema_version: str = LEDGER_SNAPSHOT_SCHEMA

    def anchor_payload(self) -> dict[str, Any]:
        """The record that is canonical-encoded and written on chain."""
        return {
            "schemaVersion": self.schema_version,
            "contractId": self.contract_id,
            "chainId": self.chain_id,
            "paymentLedgerRoot": self.payment_ledger_root,
            "includedEventCount": self.included_event_count,
            "snapshotTimestamp": self.snapshot_timestamp,
            "orderingRule": self.ordering_rule,
        }

    def to_record(self) -> dict[str, Any]:
        record = self.anchor_payload()
        record["ledgerTxHash"] = self.ledger_tx_hash
        return record

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> PaymentLedgerSnapshot:
        _require_schema(data, LEDGER_SNAPSHOT_SCHEMA)
        return cls(
            contract_id=data["contractId"],
            chain_id=int(data["chainId"]),
            payment_ledger_root=data["paymentLedgerRoot"],
            included_event_count=int(data["includedEventCount"]),
            snapshot_timestamp=data["snapshotTimestamp"],
            ledger_tx_hash=data.get("ledgerTxHash"),
            ordering_rule=data.get("orderingRule", ORDERING_RULE),
        )


@dataclass(frozen=True)
class AuditPackage:
    """Self-contained export that lets a third party re-derive the root."""
    contract_snapshot: ContractSnapshotRef
    events: tuple[PaymentEvent, ...]
    leaves: tuple[str, ...]
    root: str
    ordering_rule: str = ORDERING_RULE

    @property
    def included_event_count(self) -> int:
        return len(self.events)

    def to_record(self) -> dict[str, Any]:
        return {
            "contractSnapshot": self.contract_snapshot.to_record(),
            "paymentLedger": {
                "orderingRule": self.ordering_rule,
                "includedEventCount": self.included_event_count,
                "events": [e.to_record() for e in self.events],
                "leaves": list(self.leaves),
                "calculatedRoot": self.root,
            },
        }

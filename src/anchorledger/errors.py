"""Error taxonomy for the ledger anchoring engine.

Every error carries an ``anchor_status`` so callers can tell a submission
that definitely did not reach the chain apart from one whose outcome is
unknown:

- NOT_ANCHORED: nothing was broadcast (or the broadcast was rejected).
  Safe to retry the whole submission.
- UNKNOWN: a transaction may exist on chain. Verify before resubmitting.
- ANCHORED: the anchor confirmed but a later local step failed.
"""

from __future__ import annotations

import enum
from typing import Optional


class AnchorStatus(str, enum.Enum):
    """What is known about the on-chain state when an error is raised."""
    NOT_ANCHORED = "not_anchored"
    UNKNOWN = "unknown"
    ANCHORED = "anchored"


class LedgerError(Exception):
    """Base class for all ledger anchoring errors."""

    anchor_status: AnchorStatus = AnchorStatus.NOT_ANCHORED

    def __init__(self, message: str, tx_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_id = tx_id


class ConfigurationError(LedgerError):
    """A signing credential or setting is missing or invalid. Never retried."""


class SubmissionError(LedgerError):
    """The network rejected a broadcast, or the transaction reverted."""


class ConfirmationTimeout(LedgerError):
    """A broadcast succeeded but no confirmation was observed in time.

    The transaction may still land. ``tx_id`` holds the attempted hash.
    """

    anchor_status = AnchorStatus.UNKNOWN


class VerificationError(LedgerError):
    """An anchored payload could not be read back or did not check out."""

    anchor_status = AnchorStatus.UNKNOWN


class VerificationTimeout(VerificationError):
    """The transaction never became visible within the retry budget.

    Means "status unknown", not "does not exist".
    """


class MalformedPayloadError(VerificationError):
    """The transaction exists but carries no decodable payload."""


class AnchorMismatchError(VerificationError):
    """The payload read back from the chain differs from what was sent."""


class EncodingError(LedgerError, TypeError):
    """A record contains a value the canonical encoder cannot represent."""


class OrderingInvariantViolation(LedgerError):
    """Two events share an eventId. Aborts instead of deduplicating."""


class SchemaVersionError(LedgerError, ValueError):
    """A persisted record carries an unknown or unexpected schema tag."""


class LedgerPersistenceError(LedgerError):
    """The anchor confirmed but the updated ledger could not be stored."""

    anchor_status = AnchorStatus.ANCHORED

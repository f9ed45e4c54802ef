"""anchorledger — tamper-evident payment ledger anchored on an EVM chain."""

__version__ = "0.1.0"

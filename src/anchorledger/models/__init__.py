"""Ledger record models."""

"""Adapters for the external ledger network and coin trading API."""

from .client import LedgerClient, from_wei, is_revert, to_wei

__all__ = ["LedgerClient", "from_wei", "is_revert", "to_wei"]

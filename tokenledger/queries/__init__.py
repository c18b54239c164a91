"""Ledger query package."""

from tokenledger.queries.executor import LedgerQueries

__all__ = ["LedgerQueries"]

"""Queries over managed transactions."""

from __future__ import annotations

from typing import Any

from txmanager.errors import ErrorCode, TMError
from txmanager.streams import Persistence, SortDirection, parse_limit

_DESCENDING = {"", "desc", "descending"}
_ASCENDING = {"asc", "ascending"}


def parse_sort_direction(dir_string: str) -> SortDirection:
    """Parse a sort direction; descending is the default."""
    lowered = dir_string.lower()
    if lowered in _DESCENDING:
        return SortDirection.DESCENDING
    if lowered in _ASCENDING:
        return SortDirection.ASCENDING
    raise TMError(ErrorCode.INVALID_SORT_DIRECTION, dir_string)


def get_transaction_by_id(persistence: Persistence, tx_id: str) -> Any:
    """Return a transaction, raising TMError when it does not exist."""
    tx = persistence.get_transaction_by_id(tx_id)
    if tx is None:
        raise TMError(ErrorCode.TRANSACTION_NOT_FOUND, tx_id)
    return tx


def get_transactions(persistence: Persistence, after_str: str, limit_str: str,
                     signer: str, pending: bool, dir_string: str) -> list:
    """List transactions by signer nonce, by pending order, or by creation time."""
    limit = parse_limit(limit_str)
    direction = parse_sort_direction(dir_string)
    after_tx = None
    if after_str:
        # The transaction must exist: the index chosen decides which of its fields to page from.
        after_tx = persistence.get_transaction_by_id(after_str)
        if after_tx is None:
            raise TMError(ErrorCode.PAGINATION_TX_NOT_FOUND, after_str)
    if signer and pending:
        raise TMError(ErrorCode.TX_CONFLICT_SIGNER_PENDING)
    if signer:
        after_nonce = after_tx.nonce if after_tx is not None else None
        return persistence.list_transactions_by_nonce(signer, after_nonce, limit, direction)
    if pending:
        after_sequence = getattr(after_tx, "sequence_id", None)
        return persistence.list_transactions_pending(after_sequence, limit, direction)
    return persistence.list_transactions_by_create_time(after_tx, limit, direction)
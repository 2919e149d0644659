"""Error codes and the exception type raised by the transaction manager."""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Coded error messages; each member carries a code and a message template."""

    INVALID_UUID = ("FF00138", "Invalid UUID supplied: '{}'")
    POLICY_ENGINE_NOT_REGISTERED = ("FF21019", "No policy engine registered with name '{}'")
    NO_GAS_CONFIG = (
        "FF21020",
        "Either fixedGasPrice or a gasOracle must be configured for the policy engine",
    )
    ERROR_QUERYING_GAS_ORACLE_API = ("FF21021", "Error from gas station API [{}]: {}")
    MISSING_GAS_ORACLE_TEMPLATE = (
        "FF21024",
        "A Go template must be configured to extract the gas price from the gas oracle response",
    )
    BAD_GAS_ORACLE_TEMPLATE = ("FF21025", "Invalid Go template for the gas oracle: {}")
    GAS_ORACLE_RESULT_ERROR = (
        "FF21026",
        "Error processing the gas oracle response with the configured template",
    )
    MISSING_NAME = ("FF21028", "Name is required")
    INVALID_DISTRIBUTION_MODE = ("FF21029", "Invalid distribution mode for websocket: '{}'")
    INVALID_LIMIT = ("FF21044", "Invalid limit string '{}': {}")
    STREAM_NOT_FOUND = ("FF21045", "Event stream '{}' not found")
    LISTENER_NOT_FOUND = ("FF21046", "Event listener '{}' not found")
    DUPLICATE_STREAM_NAME = ("FF21047", "Duplicate event stream name '{}' used by stream '{}'")
    PAGINATION_TX_NOT_FOUND = ("FF21062", "The ID specified in the 'after' option (for pagination) must match an existing transaction: '{}'")
    TX_CONFLICT_SIGNER_PENDING = ("FF21063", "Only one of 'signer' and 'pending' can be supplied when querying transactions")
    INVALID_SORT_DIRECTION = ("FF21064", "Sort direction must be 'asc'/'ascending' or 'desc'/'descending': '{}'")
    TRANSACTION_NOT_FOUND = ("FF21067", "Transaction '{}' not found")

    def __init__(self, code: str, template: str) -> None:
        self.code = code
        self.template = template


class TMError(Exception):
    """An error carrying one of the coded messages."""

    def __init__(self, code: ErrorCode, *args: object) -> None:
        self.code = code
        self.args_used = args
        super().__init__(f"{code.code}: {code.template.format(*args)}")
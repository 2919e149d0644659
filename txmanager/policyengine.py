"""Interfaces shared by policy engines and blockchain connectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class UpdateType(IntEnum):
    """Whether a transaction must be persisted after a policy engine run."""

    NO = 0
    YES = 1
    DELETE = 2


class ErrorReason(str, Enum):
    """Reasons a connector may attach to a failure."""

    NONE = ""
    INVALID_INPUTS = "invalid_inputs"
    TRANSACTION_REVERTED = "transaction_reverted"
    NONCE_TOO_LOW = "nonce_too_low"
    TRANSACTION_UNDERPRICED = "transaction_underpriced"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_FOUND = "not_found"
    KNOWN_TRANSACTION = "known_transaction"
    DOWNSTREAM_DOWN = "downstream_down"


@dataclass
class ManagedTX:
    """A transaction tracked by the manager."""

    id: str = ""
    sender: str = ""
    to: str = ""
    nonce: int | None = None
    gas: int | None = None
    value: int | None = None
    transaction_data: str = ""
    transaction_hash: str = ""
    gas_price: str | None = None
    policy_info: str | None = None
    first_submit: datetime | None = None
    last_submit: datetime | None = None
    delete_requested: datetime | None = None
    receipt: Any = None


@dataclass
class TransactionSendRequest:
    """What a connector receives to submit a transaction."""

    sender: str = ""
    to: str = ""
    nonce: int | None = None
    gas: int | None = None
    value: int | None = None
    gas_price: str | None = None
    transaction_data: str = ""


class ConnectorError(Exception):
    """A failure reported by a connector.

    ``update`` tells the caller whether the transaction must still be
    persisted even though an error was raised.
    """

    def __init__(self, message: str, reason: ErrorReason = ErrorReason.NONE) -> None:
        super().__init__(message)
        self.reason = reason
        self.update = UpdateType.NO


class ConnectorAPI(ABC):
    """The parts of a blockchain connector that policy engines use."""

    @abstractmethod
    def transaction_send(self, request: TransactionSendRequest) -> str:
        """Submit a transaction and return its hash; raise ConnectorError on failure."""

    @abstractmethod
    def gas_price_estimate(self) -> str:
        """Return the current gas price as raw JSON; raise ConnectorError on failure."""


class PolicyEngine(ABC):
    """Decides what to do next with a managed transaction."""

    @abstractmethod
    def execute(self, connector: ConnectorAPI, mtx: ManagedTX) -> UpdateType:
        """Run the policy against ``mtx`` and return how it must be persisted."""
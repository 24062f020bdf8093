"""
Value-transfer ledger interface and an in-memory implementation.

transfer(source, destination, amount) either returns a TransferReceipt or
raises a TransferError subclass. A returned receipt means the transfer is
final; there is no reversal.

InMemoryTransferLedger models the parts of a real shared ledger the
distribution executor depends on: per-asset balances and per-asset
provisioning of destinations (trust lines). It backs tests, demos and
dry runs.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Set, Tuple

from agritrust.core.exceptions import (
    DestinationNotProvisionedError,
    InsufficientBalanceError,
    TransferError,
)
from agritrust.core.identity import Identity
from agritrust.core.money import Money
from agritrust.core.time import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferReceipt:
    """Proof that a transfer settled on the ledger."""
    tx_id:       str
    source:      str
    destination: str
    amount:      Money
    timestamp:   str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id":       self.tx_id,
            "source":      self.source,
            "destination": self.destination,
            "amount":      self.amount.to_dict(),
            "timestamp":   self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferReceipt":
        return cls(
            tx_id=       data["tx_id"],
            source=      data["source"],
            destination= data["destination"],
            amount=      Money.from_dict(data["amount"]),
            timestamp=   data["timestamp"],
        )


class ValueTransferLedger(ABC):
    """Capability interface consumed by the distribution executor."""

    @abstractmethod
    def transfer(self, source: Identity, destination: str, amount: Money) -> TransferReceipt:
        ...


class InMemoryTransferLedger(ValueTransferLedger):
    """
    Thread-safe in-memory ledger.

        ledger = InMemoryTransferLedger()
        ledger.fund("rTreasury", Money("100000", "RLUSD"))
        ledger.provision("rFarmer", "RLUSD")
        ledger.transfer(treasury, "rFarmer", Money("23400", "RLUSD"))

    A funded address is implicitly provisioned for that asset.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._balances: Dict[Tuple[str, str], Decimal] = defaultdict(Decimal)
        self._provisioned: Set[Tuple[str, str]] = set()
        self._receipts: List[TransferReceipt] = []

    def fund(self, address: str, amount: Money) -> None:
        with self._lock:
            self._provisioned.add((address, amount.asset))
            self._balances[(address, amount.asset)] += amount.amount

    def provision(self, address: str, asset: str) -> None:
        with self._lock:
            self._provisioned.add((address, asset))

    def is_provisioned(self, address: str, asset: str) -> bool:
        return (address, asset) in self._provisioned

    def balance_of(self, address: str, asset: str) -> Money:
        with self._lock:
            return Money(self._balances[(address, asset)], asset)

    @property
    def receipts(self) -> List[TransferReceipt]:
        with self._lock:
            return list(self._receipts)

    def transfer(self, source: Identity, destination: str, amount: Money) -> TransferReceipt:
        if not amount.is_positive():
            raise TransferError(
                "transfer amount must be positive",
                {"amount": str(amount)},
            )
        src_key = (source.address, amount.asset)
        dst_key = (destination, amount.asset)

        with self._lock:
            if dst_key not in self._provisioned:
                raise DestinationNotProvisionedError(
                    "destination cannot hold asset",
                    {"destination": destination, "asset": amount.asset},
                )
            available = self._balances[src_key]
            if available < amount.amount:
                raise InsufficientBalanceError(
                    "insufficient balance",
                    {
                        "source":    source.address,
                        "available": str(available),
                        "requested": str(amount.amount),
                    },
                )
            self._balances[src_key] -= amount.amount
            self._balances[dst_key] += amount.amount

            receipt = TransferReceipt(
                tx_id=       uuid.uuid4().hex.upper(),
                source=      source.address,
                destination= destination,
                amount=      amount,
                timestamp=   utc_timestamp(),
            )
            self._receipts.append(receipt)

        logger.debug("transfer %s %s -> %s", amount, source.address, destination)
        return receipt

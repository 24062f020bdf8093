"""
AgriTrust Value Transfers
"""

from agritrust.transfers.ledger import (
    InMemoryTransferLedger,
    TransferReceipt,
    ValueTransferLedger,
)

__all__ = ["ValueTransferLedger", "InMemoryTransferLedger", "TransferReceipt"]

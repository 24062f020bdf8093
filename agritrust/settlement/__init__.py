"""
AgriTrust Settlement

Proof submission, verification, waterfall and distribution of one
project's revenue event.
"""

from agritrust.settlement.models import (
    ContributorPayout,
    ContributorShare,
    DistributionReceipt,
    PlatformFeeMode,
    Rejection,
    ReviewDecision,
    SettlementRecord,
    SettlementState,
    TransferOutcome,
    VerificationResult,
    WaterfallResult,
)
from agritrust.settlement.store import SettlementStore
from agritrust.settlement.waterfall import compute_waterfall, shares_from_contributions
from agritrust.settlement.engine import SettlementEngine

__all__ = [
    "SettlementEngine",
    "SettlementStore",
    "SettlementRecord",
    "SettlementState",
    "ContributorShare",
    "ContributorPayout",
    "WaterfallResult",
    "DistributionReceipt",
    "TransferOutcome",
    "PlatformFeeMode",
    "ReviewDecision",
    "Rejection",
    "VerificationResult",
    "compute_waterfall",
    "shares_from_contributions",
]

"""
Partial-fill coordination for fillswap.

Splits orders into independently fillable partial orders, each locked by
its own secret and HTLC.
"""

from .secret_manager import SecretManager
from .coordinator import PartialFillCoordinator, BidSubmission
from .executor import PartialFillExecutor, OrderPlan, PartialHTLC

__all__ = [
    "SecretManager",
    "PartialFillCoordinator",
    "BidSubmission",
    "PartialFillExecutor",
    "OrderPlan",
    "PartialHTLC",
]

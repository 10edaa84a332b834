"""
fillswap - HTLC Spending and Partial-Fill Coordination

Builds redeem/refund transactions for HTLC-locked Bitcoin outputs and
coordinates orders split into partial fills serviced by competing
resolvers.

Usage:
    from fillswap import PartialFillExecutor, HTLCTransactionBuilder, FillConfig
    from fillswap import UTXO, ECDSASigner

    config = FillConfig.from_env()
    executor = PartialFillExecutor(HTLCTransactionBuilder(config), config=config,
                                   broadcast=node.send_raw_transaction)

    # Maker: one secret + HTLC per partial
    plan = executor.open_order("1.0", ["0.3", "0.4", "0.3"],
                               recipient_pubkey, refund_pubkey, locktime)

    # Resolver: fill one partial by redeeming its HTLC
    execution = executor.claim_partial(plan.htlcs[0].partial_order_id, "resolver_1",
                                       utxo, ECDSASigner.from_wif(wif), address)
"""

from .core import (
    OrderStatus,
    PartialOrderStatus,
    BidStatus,
    SpendKind,
    UTXO,
    PartialOrder,
    PartialFillOrder,
    ResolverAssignment,
    ResolverBid,
    PartialFillExecution,
    ExecutionOptions,
    PartialFillProgress,
    SecretStats,
    hash160,
    sha256,
    keccak256,
    DUST_THRESHOLD,
    DEFAULT_FEE_RATE,
    REPLACEMENT_FEE_RATE,
    MAX_SECRETS,
)
from .config import FillConfig
from .errors import (
    FillSwapError,
    InvalidParameter,
    InvalidUTXO,
    InvalidSecretFormat,
    OutOfRange,
    AmountMismatch,
    BelowDustThreshold,
    NotFound,
    UTXOAlreadySpent,
    AlreadyExecuted,
    LocktimeNotExpired,
    InvalidTransition,
    NotAuthorized,
    SecretReuse,
    SecretGenerationFailed,
    SecretMismatch,
    UnrecognizedScript,
)
from .store import UTXOLedger, OrderStore, SecretStore

from .htlc.fees import estimate_fee
from .htlc.script import create_htlc_script, extract_secret_from_witness
from .htlc.signer import ECDSASigner
from .htlc.builder import HTLCTransactionBuilder, SpendTransaction

from .swap.secret_manager import SecretManager
from .swap.coordinator import PartialFillCoordinator
from .swap.executor import PartialFillExecutor, OrderPlan

__version__ = "0.1.0"
__all__ = [
    # Core types
    "OrderStatus",
    "PartialOrderStatus",
    "BidStatus",
    "SpendKind",
    "UTXO",
    "PartialOrder",
    "PartialFillOrder",
    "ResolverAssignment",
    "ResolverBid",
    "PartialFillExecution",
    "ExecutionOptions",
    "PartialFillProgress",
    "SecretStats",
    # Utilities
    "hash160",
    "sha256",
    "keccak256",
    "estimate_fee",
    "create_htlc_script",
    "extract_secret_from_witness",
    "DUST_THRESHOLD",
    "DEFAULT_FEE_RATE",
    "REPLACEMENT_FEE_RATE",
    "MAX_SECRETS",
    # Config & stores
    "FillConfig",
    "UTXOLedger",
    "OrderStore",
    "SecretStore",
    # Components
    "ECDSASigner",
    "HTLCTransactionBuilder",
    "SpendTransaction",
    "SecretManager",
    "PartialFillCoordinator",
    "PartialFillExecutor",
    "OrderPlan",
    # Errors
    "FillSwapError",
    "InvalidParameter",
    "InvalidUTXO",
    "InvalidSecretFormat",
    "OutOfRange",
    "AmountMismatch",
    "BelowDustThreshold",
    "NotFound",
    "UTXOAlreadySpent",
    "AlreadyExecuted",
    "LocktimeNotExpired",
    "InvalidTransition",
    "NotAuthorized",
    "SecretReuse",
    "SecretGenerationFailed",
    "SecretMismatch",
    "UnrecognizedScript",
]

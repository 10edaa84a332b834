"""
Core types and constants for fillswap.
"""

import re
import hashlib
from enum import Enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any, List

from bitcoin.core.serialize import Hash160
from web3 import Web3


class OrderStatus(Enum):
    """Partial-fill order lifecycle."""
    PENDING = "pending"          # Created, nothing executed yet
    EXECUTING = "executing"      # At least one partial order claimed
    COMPLETED = "completed"      # Caller marked complete
    CANCELLED = "cancelled"      # Terminal, blocks further transitions


class PartialOrderStatus(Enum):
    """Partial order lifecycle."""
    PENDING = "pending"
    ASSIGNED = "assigned"        # Resolver bound
    EXECUTING = "executing"      # Claimed by a resolver, settlement in flight
    COMPLETED = "completed"
    FAILED = "failed"            # Resolver failed, waiting for reassignment


class BidStatus(Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class SpendKind(Enum):
    REDEEM = "redeem"
    REFUND = "refund"


@dataclass
class UTXO:
    """An HTLC-locked output to be spent."""
    txid: str                # 64 hex chars, display (big-endian) order
    vout: int
    value: int               # Satoshis
    script: bytes            # Locking script (scriptPubKey)

    @property
    def key(self) -> str:
        return utxo_key(self.txid, self.vout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "value": self.value,
            "script": self.script.hex() if isinstance(self.script, (bytes, bytearray)) else self.script,
        }


@dataclass
class PartialOrder:
    id: str
    amount: Decimal
    status: PartialOrderStatus = PartialOrderStatus.PENDING
    resolver_id: Optional[str] = None
    secret: Optional[str] = None
    secret_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "status": self.status.value,
            "resolver_id": self.resolver_id,
            "secret_hash": self.secret_hash,
        }


@dataclass
class PartialFillOrder:
    order_id: str
    total_amount: Decimal
    partial_orders: List[PartialOrder]
    status: OrderStatus = OrderStatus.PENDING
    created_at: int = 0          # ms
    updated_at: int = 0          # ms

    # Optional order metadata
    from_token: Optional[str] = None
    to_token: Optional[str] = None
    user_address: Optional[str] = None
    timelock: Optional[int] = None

    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "partial_orders": [p.to_dict() for p in self.partial_orders],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "from_token": self.from_token,
            "to_token": self.to_token,
            "user_address": self.user_address,
            "timelock": self.timelock,
        }


@dataclass
class ResolverAssignment:
    partial_order_id: str
    resolver_id: str
    assigned_at: int             # ms


@dataclass
class ResolverBid:
    partial_order_id: str
    resolver_id: str
    bid_amount: Decimal
    fee: Decimal
    status: BidStatus = BidStatus.SUBMITTED
    submitted_at: int = 0        # ms


@dataclass
class PartialFillExecution:
    """Record of a successful partial fill."""
    partial_order_id: str
    resolver_id: str
    status: str = "executed"
    started_at: int = 0          # ms
    executed_at: int = 0         # ms
    cross_chain_coordinated: bool = False
    fallback_mode: bool = False
    result: Any = None


@dataclass
class ExecutionOptions:
    cross_chain_coordinated: bool = False
    fallback_mode: bool = False


@dataclass
class PartialFillProgress:
    total_parts: int
    completed_parts: int
    completion_percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_parts": self.total_parts,
            "completed_parts": self.completed_parts,
            "completion_percentage": self.completion_percentage,
        }


@dataclass
class SecretStats:
    count: int = 0
    average_length: float = 0.0
    unique_count: int = 0
    entropy_score: float = 0.0


@dataclass
class SecretEntry:
    """Stored secret metadata."""
    hash: str
    created_at: float            # ms
    expires_at: Optional[float] = None  # ms
    usage_count: int = 0
    invalidated: bool = False

    def is_expired(self, now_ms: float) -> bool:
        return self.expires_at is not None and now_ms > self.expires_at


@dataclass
class SpentRecord:
    """What consumed an outpoint."""
    kind: SpendKind
    txid: str
    spent_at: float = 0.0


# =============================================================================
# Hash Utilities
# =============================================================================

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return Hash160(data)


def keccak256(data: bytes) -> bytes:
    """Keccak-256, the account-chain hashlock convention."""
    return bytes(Web3.keccak(data))


HASH_FUNCTIONS = {
    "hash160": hash160,
    "sha256": sha256,
    "keccak256": keccak256,
}


def is_secret_hex(secret: Any) -> bool:
    """True if secret is a 64-char hex string (32 bytes)."""
    return isinstance(secret, str) and bool(_HEX64.match(secret))


def utxo_key(txid: str, vout: int) -> str:
    return f"{txid}:{vout}"


# =============================================================================
# Constants
# =============================================================================

DUST_THRESHOLD = 546            # sats
MIN_FEE_RATE = 1                # sat/byte
DEFAULT_FEE_RATE = 10           # sat/byte, redeem and refund
REPLACEMENT_FEE_RATE = 15       # sat/byte, RBF refund replacement
MAX_SECRETS = 1000              # per batch
SECRET_BYTES = 32
SECRET_HEX_LENGTH = 64

AMOUNT_TOLERANCE = Decimal("0.000001")

# nSequence values
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME = 0xFFFFFFFE  # Enables nLockTime, no RBF
SEQUENCE_RBF = 0xFFFFFFFD       # BIP125 replace signal

# nLockTime values below this are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000

"""
HTLC (Hash Time-Locked Contract) spending for UTXO chains.

HTLCs enable trustless atomic swaps by ensuring:
1. Funds can only be redeemed with knowledge of a secret (preimage)
2. Funds can be refunded after a timeout if not redeemed

Scripts are native Bitcoin Script behind P2WSH, in two hash dialects:
- sha256: OP_SHA256, 32-byte hashlock (default)
- hash160: OP_HASH160, 20-byte hashlock
"""

from .fees import estimate_fee, estimate_size
from .script import (
    create_htlc_script,
    p2wsh_script_pubkey,
    p2wsh_address,
    address_to_script_pubkey,
    extract_secret_from_witness,
    parse_htlc_script,
    ScriptCommitmentExtractor,
    SHA256Dialect,
    Hash160Dialect,
    UnverifiedScriptExtractor,
    DEFAULT_EXTRACTORS,
)
from .signer import Signer, ECDSASigner
from .builder import HTLCTransactionBuilder, SpendTransaction

__all__ = [
    "estimate_fee",
    "estimate_size",
    "create_htlc_script",
    "p2wsh_script_pubkey",
    "p2wsh_address",
    "address_to_script_pubkey",
    "extract_secret_from_witness",
    "parse_htlc_script",
    "ScriptCommitmentExtractor",
    "SHA256Dialect",
    "Hash160Dialect",
    "UnverifiedScriptExtractor",
    "DEFAULT_EXTRACTORS",
    "Signer",
    "ECDSASigner",
    "HTLCTransactionBuilder",
    "SpendTransaction",
]

"""
Configuration for fillswap components.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .core import (
    DUST_THRESHOLD, MIN_FEE_RATE, DEFAULT_FEE_RATE,
    REPLACEMENT_FEE_RATE, MAX_SECRETS,
)


@dataclass
class FillConfig:
    """Builder and coordinator configuration."""
    network: str = "signet"         # signet, testnet, mainnet, regtest

    # Fee policy
    dust_threshold: int = DUST_THRESHOLD
    min_fee_rate: int = MIN_FEE_RATE
    default_fee_rate: int = DEFAULT_FEE_RATE
    replacement_fee_rate: int = REPLACEMENT_FEE_RATE

    # Secrets
    max_secrets: int = MAX_SECRETS
    secret_expiry_ms: Optional[int] = None  # None = secrets never expire

    @classmethod
    def from_env(cls) -> "FillConfig":
        """Build config from FILLSWAP_* environment variables."""
        expiry = os.environ.get("FILLSWAP_SECRET_EXPIRY_MS")
        return cls(
            network=os.environ.get("FILLSWAP_NETWORK", "signet"),
            dust_threshold=int(os.environ.get("FILLSWAP_DUST_THRESHOLD", DUST_THRESHOLD)),
            min_fee_rate=int(os.environ.get("FILLSWAP_MIN_FEE_RATE", MIN_FEE_RATE)),
            default_fee_rate=int(os.environ.get("FILLSWAP_FEE_RATE", DEFAULT_FEE_RATE)),
            replacement_fee_rate=int(os.environ.get("FILLSWAP_REPLACEMENT_FEE_RATE", REPLACEMENT_FEE_RATE)),
            max_secrets=int(os.environ.get("FILLSWAP_MAX_SECRETS", MAX_SECRETS)),
            secret_expiry_ms=int(expiry) if expiry else None,
        )

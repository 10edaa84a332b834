"""
Transaction fee estimation.
"""

import math

from ..core import MIN_FEE_RATE
from ..errors import InvalidParameter

# Legacy-size approximation (bytes)
TX_OVERHEAD_SIZE = 10       # version + locktime + counts
INPUT_SIZE = 148
OUTPUT_SIZE = 34


def estimate_size(input_count: int, output_count: int) -> int:
    """Approximate serialized size in bytes."""
    return TX_OVERHEAD_SIZE + input_count * INPUT_SIZE + output_count * OUTPUT_SIZE


def estimate_fee(input_count: int, output_count: int, fee_rate: float,
                 min_fee_rate: float = MIN_FEE_RATE) -> int:
    """
    Estimate fee in sats.

    Args:
        input_count: Number of inputs (>= 1)
        output_count: Number of outputs (>= 1)
        fee_rate: sat/byte (>= min_fee_rate)

    Returns:
        size * fee_rate, rounded up to a whole satoshi
    """
    if input_count < 1 or output_count < 1 or fee_rate < min_fee_rate:
        raise InvalidParameter(
            f"Invalid fee estimation parameters: inputs={input_count}, "
            f"outputs={output_count}, fee_rate={fee_rate} (min {min_fee_rate})"
        )
    return int(math.ceil(estimate_size(input_count, output_count) * fee_rate))

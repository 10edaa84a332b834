"""
Exceptions raised by fillswap.

Every error is a FillSwapError and also the builtin the SDK has always
raised for that condition (ValueError, LookupError, RuntimeError), so
existing `except ValueError` call sites keep working.

Only LocktimeNotExpired is retryable: the same call succeeds once the
timelock passes. Everything else must not be retried with the same
arguments.
"""


class FillSwapError(Exception):
    """Base class for all fillswap errors."""
    retryable = False


# =============================================================================
# Structural validation (caller-fixable)
# =============================================================================

class InvalidParameter(FillSwapError, ValueError):
    """Argument outside its documented domain."""


class InvalidUTXO(FillSwapError, ValueError):
    """UTXO is malformed or does not lock the given HTLC script."""


class InvalidSecretFormat(FillSwapError, ValueError):
    """Secret is not 64 hex characters (32 bytes)."""


class OutOfRange(FillSwapError, ValueError):
    """Requested count outside [0, MAX_SECRETS]."""


class AmountMismatch(FillSwapError, ValueError):
    """Partial amounts do not sum to the order total."""


class BelowDustThreshold(FillSwapError, ValueError):
    """Input or output value under the dust threshold."""


# =============================================================================
# State conflicts
# =============================================================================

class NotFound(FillSwapError, LookupError):
    """Order or partial order does not exist."""


class UTXOAlreadySpent(FillSwapError, RuntimeError):
    """Another redeem/refund already consumed this outpoint."""


class AlreadyExecuted(FillSwapError, RuntimeError):
    """Partial order was already executed or is being executed."""


class LocktimeNotExpired(FillSwapError, RuntimeError):
    """Refund path not yet available."""
    retryable = True


class InvalidTransition(FillSwapError, RuntimeError):
    """Operation not allowed from the current order/partial-order status."""


class NotAuthorized(FillSwapError, RuntimeError):
    """Resolver is not the one bound to the partial order."""


class SecretReuse(FillSwapError, RuntimeError):
    """Secret is already bound to another order."""


class SecretGenerationFailed(FillSwapError, RuntimeError):
    """CSPRNG did not yield enough unused secrets."""


# =============================================================================
# Cryptographic validation
# =============================================================================

class SecretMismatch(FillSwapError, ValueError):
    """Secret does not hash to the script's committed hash."""


class UnrecognizedScript(FillSwapError, ValueError):
    """No commitment extractor understands the HTLC script."""

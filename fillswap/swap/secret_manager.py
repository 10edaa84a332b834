"""
Secret management for partial fills.

One 32-byte secret per partial order. The secret's hash goes into that
partial's HTLC; revealing the secret on redeem is what lets the other side
claim. A secret must therefore never be handed out twice: generate_many
avoids the active working set, and reserve() binds secrets to exactly one
order.

Hash conventions:
    hash160    RIPEMD160(SHA256(s)), 40 hex  (UTXO-chain default)
    sha256     SHA256(s), 64 hex
    keccak256  Keccak-256(s), 64 hex         (account-chain contracts)
"""

import re
import math
import time
import secrets as _secrets
import logging
from collections import Counter
from typing import List, Optional, Dict, Callable, Sequence

from ..config import FillConfig
from ..core import SecretEntry, SecretStats, HASH_FUNCTIONS, SECRET_BYTES, is_secret_hex
from ..errors import (
    InvalidParameter, InvalidSecretFormat, OutOfRange, SecretReuse, SecretGenerationFailed,
)
from ..store import SecretStore

log = logging.getLogger(__name__)

_HASH_HEX = re.compile(r"^[0-9a-f]{40}$|^[0-9a-f]{64}$")

# Normalized Shannon entropy of the hex digits (1.0 = all 16 equally often).
# Random 32-byte secrets average about 0.95; repeated-digit secrets near 0.
MIN_SECRET_ENTROPY = 0.75
MAX_PATTERN_PERIOD = 16


def _now_ms() -> float:
    return time.time() * 1000


def hex_entropy(secret: str) -> float:
    """Shannon entropy of the hex digits, normalized to [0, 1]."""
    if not secret:
        return 0.0
    n = len(secret)
    entropy = -sum(c / n * math.log2(c / n) for c in Counter(secret.lower()).values())
    return min(1.0, entropy / 4)


def has_repeating_pattern(secret: str, max_period: int = MAX_PATTERN_PERIOD) -> bool:
    """True if the secret is one short unit repeated, e.g. "ab" * 32."""
    s = secret.lower()
    for period in range(1, min(max_period, len(s) // 2) + 1):
        unit = s[:period]
        if (unit * (len(s) // period + 1))[:len(s)] == s:
            return True
    return False


def check_secret_strength(secret: str, index: int = 0):
    """
    Reject guessable caller-supplied secrets.

    Raises:
        InvalidSecretFormat: low digit entropy or a repeating pattern
    """
    entropy = hex_entropy(secret)
    if entropy < MIN_SECRET_ENTROPY:
        raise InvalidSecretFormat(
            f"Secret at index {index} has low entropy: {entropy:.3f} (min {MIN_SECRET_ENTROPY})"
        )
    if has_repeating_pattern(secret):
        raise InvalidSecretFormat(f"Secret at index {index} is a repeating pattern")


class SecretManager:
    """
    Generates, hashes, stores, expires, rotates and reserves secrets.

    All state lives in the injected SecretStore; every method that reads and
    then writes it does so inside one store transaction.
    """

    def __init__(self, config: FillConfig = None, store: SecretStore = None,
                 clock: Callable[[], float] = _now_ms):
        self.config = config or FillConfig()
        self._store = store if store is not None else SecretStore()
        self.clock = clock

    # =========================================================================
    # Generation & hashing
    # =========================================================================

    def generate_many(self, count: int) -> List[str]:
        """
        Generate `count` fresh secrets (64 hex chars each).

        Raises:
            OutOfRange: count outside [0, max_secrets]
        """
        if not isinstance(count, int) or isinstance(count, bool):
            raise OutOfRange(f"Secret count must be an integer, got {count!r}")
        if count < 0 or count > self.config.max_secrets:
            raise OutOfRange(f"Secret count {count} outside [0, {self.config.max_secrets}]")
        if count == 0:
            return []

        start = time.time()
        result = []
        seen = set()
        max_attempts = count * 10

        with self._store.transaction():
            attempts = 0
            while len(result) < count and attempts < max_attempts:
                attempts += 1
                secret = _secrets.token_bytes(SECRET_BYTES).hex()
                if secret in seen or secret in self._store.entries or secret in self._store.reserved:
                    continue
                seen.add(secret)
                result.append(secret)

        if len(result) < count:
            raise SecretGenerationFailed(f"Failed to generate {count} unique secrets after {max_attempts} attempts")

        log.debug(f"Generated {count} secrets in {(time.time() - start) * 1000:.1f}ms")
        return result

    def hash_all(self, secrets: Sequence[str], algorithm: str = "hash160") -> List[str]:
        """
        Hash each secret, preserving order.

        Raises:
            InvalidSecretFormat: a secret is not 64 hex chars
            InvalidParameter: unknown algorithm
        """
        hash_fn = HASH_FUNCTIONS.get(algorithm)
        if hash_fn is None:
            raise InvalidParameter(f"Unknown hash algorithm: {algorithm}")
        if isinstance(secrets, str) or not isinstance(secrets, (list, tuple)):
            raise InvalidParameter("Secrets must be a list")

        hashes = []
        for i, secret in enumerate(secrets):
            if not is_secret_hex(secret):
                raise InvalidSecretFormat(f"Invalid secret at index {i}")
            hashes.append(hash_fn(bytes.fromhex(secret)).hex())
        return hashes

    def create_secret_to_hash_map(self, secrets: Sequence[str]) -> Dict[str, str]:
        """Ordered secret -> hash160 mapping."""
        if not secrets:
            raise InvalidParameter("Secrets must be a non-empty list")
        return dict(zip(secrets, self.hash_all(secrets)))

    # =========================================================================
    # Storage
    # =========================================================================

    def store(self, secrets: Sequence[str], hashes: Sequence[str],
              expires_at: Optional[float] = None):
        """
        Store secret -> hash entries.

        Without expires_at, config.secret_expiry_ms (if set) applies.
        """
        self._check_pairs(secrets, hashes)
        now = self.clock()
        if expires_at is None and self.config.secret_expiry_ms:
            expires_at = now + self.config.secret_expiry_ms

        with self._store.transaction():
            for secret, hash_hex in zip(secrets, hashes):
                self._store.entries[secret] = SecretEntry(
                    hash=hash_hex, created_at=now, expires_at=expires_at
                )

    def store_with_expiration(self, secrets: Sequence[str], hashes: Sequence[str],
                              expiration_ms: float):
        """Store entries expiring expiration_ms from now."""
        if expiration_ms is None or expiration_ms <= 0:
            raise InvalidParameter(f"Expiration must be positive, got {expiration_ms}")
        self.store(secrets, hashes, expires_at=self.clock() + expiration_ms)

    def lookup_hashes(self, secrets: Sequence[str]) -> List[Optional[str]]:
        """
        Stored hash per secret, None if unknown, expired or rotated out.

        Expired entries are evicted here; hits bump usage_count.
        """
        now = self.clock()
        result = []
        with self._store.transaction():
            for secret in secrets:
                entry = self._store.entries.get(secret)
                if entry is None:
                    result.append(None)
                elif entry.is_expired(now):
                    del self._store.entries[secret]
                    result.append(None)
                elif entry.invalidated:
                    result.append(None)
                else:
                    entry.usage_count += 1
                    result.append(entry.hash)
        return result

    def validate(self, secret: str, claimed_hash: str, algorithm: str = "hash160") -> bool:
        """True iff hash(secret) == claimed_hash and secret not rotated out."""
        if not is_secret_hex(secret) or not isinstance(claimed_hash, str):
            return False
        hash_fn = HASH_FUNCTIONS.get(algorithm)
        if hash_fn is None:
            return False

        with self._store.transaction():
            entry = self._store.entries.get(secret)
            if entry is not None and entry.invalidated:
                return False

        return hash_fn(bytes.fromhex(secret)).hex() == claimed_hash.lower()

    def rotate(self, old_secrets: Sequence[str], new_secrets: Sequence[str]):
        """
        Replace old secrets with new ones in one step.

        New secrets are stored and old ones invalidated inside the same
        store transaction. Guessable new secrets are rejected before anything changes.
        """
        new_hashes = self.hash_all(new_secrets)
        for i, secret in enumerate(new_secrets):
            check_secret_strength(secret, i)
        overlap = set(old_secrets) & set(new_secrets)
        if overlap:
            raise InvalidParameter(f"{len(overlap)} secret(s) in both old and new sets")

        now = self.clock()
        expires_at = now + self.config.secret_expiry_ms if self.config.secret_expiry_ms else None

        with self._store.transaction():
            for secret, hash_hex in zip(new_secrets, new_hashes):
                self._store.entries[secret] = SecretEntry(
                    hash=hash_hex, created_at=now, expires_at=expires_at
                )
            for secret in old_secrets:
                entry = self._store.entries.get(secret)
                if entry is None:
                    entry = SecretEntry(hash="", created_at=now)
                    self._store.entries[secret] = entry
                entry.invalidated = True
                entry.expires_at = None
            self._cleanup_locked(now)

        log.info(f"Rotated {len(old_secrets)} secrets -> {len(new_secrets)} new")

    def reserve(self, secrets: Sequence[str], owner: str):
        """
        Bind secrets to an owner (order id), all or nothing.

        Raises:
            InvalidSecretFormat: malformed or guessable secret
            SecretReuse: a secret is already bound, or repeated in the input
        """
        for i, secret in enumerate(secrets):
            if not is_secret_hex(secret):
                raise InvalidSecretFormat(f"Invalid secret at index {i}")
            check_secret_strength(secret, i)
        if len(set(secrets)) != len(secrets):
            raise SecretReuse("Duplicate secrets in reservation")

        with self._store.transaction():
            for secret in secrets:
                if secret in self._store.reserved:
                    raise SecretReuse(f"Secret already bound to {self._store.reserved[secret]}")
            for secret in secrets:
                self._store.reserved[secret] = owner

    def is_reserved(self, secret: str) -> bool:
        with self._store.transaction():
            return secret in self._store.reserved

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_expired(self) -> int:
        """Evict expired entries. Returns number evicted."""
        with self._store.transaction():
            removed = self._cleanup_locked(self.clock())
        if removed:
            log.info(f"Cleaned up {removed} expired secrets")
        return removed

    def _cleanup_locked(self, now: float) -> int:
        expired = [s for s, e in self._store.entries.items() if e.is_expired(now)]
        for secret in expired:
            del self._store.entries[secret]
        return len(expired)

    def storage_stats(self) -> dict:
        now = self.clock()
        with self._store.transaction():
            entries = list(self._store.entries.values())

        total = len(entries)
        return {
            "total_stored": total,
            "expired_count": sum(1 for e in entries if e.is_expired(now)),
            "average_usage": sum(e.usage_count for e in entries) / total if total else 0,
            "oldest_created_at": min((e.created_at for e in entries), default=now),
        }

    @staticmethod
    def stats(secrets: Sequence[str]) -> SecretStats:
        if not secrets:
            return SecretStats()
        count = len(secrets)
        unique = len(set(secrets))
        return SecretStats(
            count=count,
            average_length=sum(len(s) for s in secrets) / count,
            unique_count=unique,
            entropy_score=unique / count,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _check_pairs(secrets: Sequence[str], hashes: Sequence[str]):
        if len(secrets) != len(hashes):
            raise InvalidParameter(
                f"Secrets and hashes must have the same length ({len(secrets)} != {len(hashes)})"
            )
        for i, (secret, hash_hex) in enumerate(zip(secrets, hashes)):
            if not is_secret_hex(secret):
                raise InvalidSecretFormat(f"Invalid secret at index {i}")
            if not isinstance(hash_hex, str) or not _HASH_HEX.match(hash_hex):
                raise InvalidParameter(f"Invalid hash at index {i}")

"""
HTLC witness scripts, commitment extraction and address helpers.

HTLC Script Structure (size-guarded, P2WSH):
    OP_SIZE 32 OP_EQUAL
    OP_IF
        <HASHOP> <hashlock> OP_EQUALVERIFY
        <recipient_pubkey>
    OP_ELSE
        <locktime> OP_CHECKLOCKTIMEVERIFY OP_DROP
        <refund_pubkey>
    OP_ENDIF
    OP_CHECKSIG

The OP_SIZE guard picks the branch from the top witness item, so no
OP_TRUE/OP_FALSE selector is needed:

To redeem (with secret):
    <signature> <secret> <witnessScript>

To refund (after locktime):
    <signature> <witnessScript>

HASHOP is OP_SHA256 (32-byte hashlock) or OP_HASH160 (20-byte hashlock).
"""

import struct
import logging
import threading
from typing import Optional, List, Sequence
from dataclasses import dataclass

from bitcoin import SelectParams
from bitcoin.core.script import (
    CScript, CScriptInvalidError, OP_SIZE, OP_EQUAL, OP_IF, OP_ELSE,
    OP_ENDIF, OP_DROP, OP_EQUALVERIFY, OP_CHECKSIG,
    OP_CHECKLOCKTIMEVERIFY, OP_SHA256, OP_HASH160,
)
from bitcoin.wallet import CBitcoinAddress

from ..core import sha256, hash160, SECRET_BYTES
from ..errors import InvalidParameter

log = logging.getLogger(__name__)

NETWORKS = ("mainnet", "testnet", "signet", "regtest")

# SelectParams() is process-global in python-bitcoinlib
_params_lock = threading.Lock()


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < 0x4c:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([0x4c, length]) + data
    elif length <= 0xffff:
        return bytes([0x4d]) + struct.pack('<H', length) + data
    else:
        return bytes([0x4e]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push integer to script (minimal encoding)."""
    if n == 0:
        return bytes([0x00])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])  # OP_1 through OP_16
    return push_data(encode_script_num(n))


def encode_script_num(n: int) -> bytes:
    """Little-endian with sign bit, as CScriptNum."""
    if n == 0:
        return b""
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def decode_script_num(data: bytes) -> int:
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def decompile(script: bytes) -> Optional[List]:
    """
    Decompile script into opcodes and push data.

    Returns None if the script is truncated or otherwise unparseable.
    Small integers (OP_0..OP_16) come back as ints, pushes as bytes.
    """
    try:
        return list(CScript(script))
    except CScriptInvalidError:
        return None


def p2wsh_script_pubkey(script: bytes) -> bytes:
    """OP_0 <SHA256(witnessScript)>."""
    return bytes([0x00, 0x20]) + sha256(script)


def is_p2wsh(script_pubkey: bytes) -> bool:
    return len(script_pubkey) == 34 and script_pubkey[0] == 0x00 and script_pubkey[1] == 0x20


def _select_network(network: str):
    if network not in NETWORKS:
        raise InvalidParameter(f"Unknown network: {network} (expected one of {', '.join(NETWORKS)})")
    SelectParams(network)


def p2wsh_address(script: bytes, network: str = "signet") -> str:
    """Bech32 P2WSH address for a witness script."""
    with _params_lock:
        _select_network(network)
        return str(CBitcoinAddress.from_scriptPubKey(CScript(p2wsh_script_pubkey(script))))


def address_to_script_pubkey(address: str, network: str = "signet") -> bytes:
    """Decode a base58 or bech32 address into its scriptPubKey."""
    with _params_lock:
        _select_network(network)
        try:
            return bytes(CBitcoinAddress(address).to_scriptPubKey())
        except Exception as e:
            raise InvalidParameter(f"Invalid {network} address {address!r}: {e}") from e


# =============================================================================
# Commitment extraction
# =============================================================================

class ScriptCommitmentExtractor:
    """
    Reads the committed secret hash out of one HTLC script dialect.

    Implementations must locate the hash at a fixed decompiled position and
    hash candidate secrets the same way the script does.
    """
    name = "abstract"
    verifies = True

    def matches(self, script: bytes) -> bool:
        raise NotImplementedError

    def extract(self, script: bytes) -> Optional[bytes]:
        raise NotImplementedError

    def hash_secret(self, secret: bytes) -> bytes:
        raise NotImplementedError

    def verify(self, secret: bytes, script: bytes) -> bool:
        committed = self.extract(script)
        return committed is not None and self.hash_secret(secret) == committed


@dataclass
class HTLCScriptInfo:
    """Fields of a parsed size-guarded HTLC script."""
    dialect: str
    hashlock: bytes
    recipient_pubkey: bytes
    refund_pubkey: bytes
    locktime: int


class SizeGuardedDialect(ScriptCommitmentExtractor):
    """Size-guarded HTLC; subclasses fix the hash opcode."""
    hash_opcode = None
    digest_size = 0

    # Decompiled positions
    HASHOP_INDEX = 4
    COMMITMENT_INDEX = 5
    RECIPIENT_INDEX = 7
    LOCKTIME_INDEX = 9
    REFUND_INDEX = 12
    SCRIPT_LENGTH = 15

    def build(self, hashlock: bytes, recipient_pubkey: bytes,
              refund_pubkey: bytes, locktime: int) -> bytes:
        if len(hashlock) != self.digest_size:
            raise InvalidParameter(
                f"{self.name} hashlock must be {self.digest_size} bytes, got {len(hashlock)}"
            )
        if locktime <= 0 or locktime > 0xFFFFFFFF:
            raise InvalidParameter(f"Invalid locktime: {locktime}")

        script = bytes([OP_SIZE]) + push_int(SECRET_BYTES) + bytes([OP_EQUAL])
        script += bytes([OP_IF])
        script += bytes([self.hash_opcode])
        script += push_data(hashlock)
        script += bytes([OP_EQUALVERIFY])
        script += push_data(recipient_pubkey)
        script += bytes([OP_ELSE])
        script += push_int(locktime)
        script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
        script += push_data(refund_pubkey)
        script += bytes([OP_ENDIF])
        script += bytes([OP_CHECKSIG])
        return script

    def _chunks(self, script: bytes) -> Optional[List]:
        chunks = decompile(script)
        if not chunks or len(chunks) != self.SCRIPT_LENGTH:
            return None
        expected = {
            0: OP_SIZE, 2: OP_EQUAL, 3: OP_IF, self.HASHOP_INDEX: self.hash_opcode,
            6: OP_EQUALVERIFY, 8: OP_ELSE, 10: OP_CHECKLOCKTIMEVERIFY,
            11: OP_DROP, 13: OP_ENDIF, 14: OP_CHECKSIG,
        }
        for index, opcode in expected.items():
            if isinstance(chunks[index], bytes) or chunks[index] != opcode:
                return None
        if chunks[1] != bytes([SECRET_BYTES]):
            return None
        commitment = chunks[self.COMMITMENT_INDEX]
        if not isinstance(commitment, bytes) or len(commitment) != self.digest_size:
            return None
        return chunks

    def matches(self, script: bytes) -> bool:
        return self._chunks(script) is not None

    def extract(self, script: bytes) -> Optional[bytes]:
        chunks = self._chunks(script)
        return chunks[self.COMMITMENT_INDEX] if chunks else None

    def parse(self, script: bytes) -> Optional[HTLCScriptInfo]:
        chunks = self._chunks(script)
        if not chunks:
            return None
        locktime = chunks[self.LOCKTIME_INDEX]
        if isinstance(locktime, bytes):
            locktime = decode_script_num(locktime)
        return HTLCScriptInfo(
            dialect=self.name,
            hashlock=chunks[self.COMMITMENT_INDEX],
            recipient_pubkey=chunks[self.RECIPIENT_INDEX],
            refund_pubkey=chunks[self.REFUND_INDEX],
            locktime=int(locktime),
        )


class SHA256Dialect(SizeGuardedDialect):
    name = "sha256"
    hash_opcode = OP_SHA256
    digest_size = 32

    def hash_secret(self, secret: bytes) -> bytes:
        return sha256(secret)


class Hash160Dialect(SizeGuardedDialect):
    """Matches SecretManager's hash160 hashes."""
    name = "hash160"
    hash_opcode = OP_HASH160
    digest_size = 20

    def hash_secret(self, secret: bytes) -> bytes:
        return hash160(secret)


class UnverifiedScriptExtractor(ScriptCommitmentExtractor):
    """
    NON-PRODUCTION. Accepts any script and skips secret validation.

    Exists only for placeholder scripts in test fixtures that no real
    dialect can decompile. Never install it in a production builder.
    """
    name = "unverified"
    verifies = False

    def matches(self, script: bytes) -> bool:
        return True

    def extract(self, script: bytes) -> Optional[bytes]:
        return None

    def hash_secret(self, secret: bytes) -> bytes:
        return b""


SHA256 = SHA256Dialect()
HASH160 = Hash160Dialect()
DEFAULT_EXTRACTORS = (SHA256, HASH160)
DIALECTS = {d.name: d for d in DEFAULT_EXTRACTORS}


def get_dialect(name: str) -> SizeGuardedDialect:
    dialect = DIALECTS.get(name)
    if dialect is None:
        raise InvalidParameter(f"Unknown script dialect: {name}")
    return dialect


def create_htlc_script(hashlock: str, recipient_pubkey: str, refund_pubkey: str,
                       locktime: int, dialect: str = "sha256") -> bytes:
    """
    Create HTLC witness script.

    Args:
        hashlock: Secret hash (hex), 32 bytes for sha256, 20 for hash160
        recipient_pubkey: Compressed pubkey for redeem path (hex)
        refund_pubkey: Compressed pubkey for refund path (hex)
        locktime: Absolute block height or unix timestamp
        dialect: "sha256" or "hash160"

    Returns:
        Witness script bytes
    """
    try:
        hashlock_bytes = bytes.fromhex(hashlock)
        recipient_bytes = bytes.fromhex(recipient_pubkey)
        refund_bytes = bytes.fromhex(refund_pubkey)
    except (ValueError, TypeError) as e:
        raise InvalidParameter(f"HTLC script fields must be hex: {e}") from e

    for label, key in (("recipient", recipient_bytes), ("refund", refund_bytes)):
        if len(key) != 33 or key[0] not in (0x02, 0x03):
            raise InvalidParameter(f"{label} pubkey must be 33-byte compressed, got {len(key)} bytes")

    return get_dialect(dialect).build(hashlock_bytes, recipient_bytes, refund_bytes, locktime)


def find_extractor(script: bytes, extractors: Sequence[ScriptCommitmentExtractor]
                   ) -> Optional[ScriptCommitmentExtractor]:
    for extractor in extractors:
        if extractor.matches(script):
            return extractor
    return None


def parse_htlc_script(script: bytes) -> Optional[HTLCScriptInfo]:
    """Parse any known dialect, None if unrecognized."""
    for dialect in DEFAULT_EXTRACTORS:
        info = dialect.parse(script)
        if info:
            return info
    return None


def extract_secret_from_witness(witness: Sequence[bytes], script: bytes,
                                extractors: Sequence[ScriptCommitmentExtractor] = DEFAULT_EXTRACTORS
                                ) -> Optional[str]:
    """
    Recover the secret revealed by a redeem witness.

    Witness layout: [signature, secret, witnessScript]. Refund witnesses
    and witnesses for other scripts yield None; so does a secret that does
    not match the script commitment.
    """
    if len(witness) != 3 or bytes(witness[-1]) != bytes(script):
        return None

    candidate = bytes(witness[1])
    if len(candidate) != SECRET_BYTES:
        return None

    extractor = find_extractor(script, extractors)
    if extractor is None or not extractor.verifies:
        return None
    if not extractor.verify(candidate, script):
        log.warning("Witness secret does not match script commitment")
        return None
    return candidate.hex()

"""
Signing capability for HTLC spends.

The builder never touches key material directly. It asks a signer for a
public key and a DER signature over a 32-byte BIP143 sighash, then appends
the sighash type byte itself. Any object with `public_key` and
`sign(sighash)` works (HSM, remote wallet, ...); ECDSASigner is the
in-process reference implementation.
"""

import hashlib
from typing import Tuple

import base58
from ecdsa import SigningKey, SECP256k1, BadSignatureError
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigencode_der_canonize, sigdecode_der

from ..errors import InvalidParameter


class Signer:
    """Interface: compressed public key plus DER signing of a digest."""

    @property
    def public_key(self) -> bytes:
        raise NotImplementedError

    def sign(self, sighash: bytes) -> bytes:
        raise NotImplementedError


def decode_wif(wif: str) -> Tuple[bytes, bool]:
    """Decode WIF to (private key bytes, compressed)."""
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError as e:
        raise InvalidParameter(f"Invalid WIF: {e}") from e

    if decoded[0] in (0x80, 0xef):  # Mainnet or Testnet
        if len(decoded) == 34 and decoded[-1] == 0x01:
            return decoded[1:33], True
        if len(decoded) == 33:
            return decoded[1:33], False
    raise InvalidParameter(f"Invalid WIF prefix/length: {decoded[0]}, {len(decoded)}")


class ECDSASigner(Signer):
    """secp256k1 signer with RFC6979 nonces and low-S DER output."""

    def __init__(self, privkey: bytes):
        if len(privkey) != 32:
            raise InvalidParameter(f"Private key must be 32 bytes, got {len(privkey)}")
        self._sk = SigningKey.from_string(privkey, curve=SECP256k1)
        self._vk = self._sk.get_verifying_key()

    @classmethod
    def from_wif(cls, wif: str) -> "ECDSASigner":
        privkey, _compressed = decode_wif(wif)
        return cls(privkey)

    @classmethod
    def from_hex(cls, privkey_hex: str) -> "ECDSASigner":
        try:
            return cls(bytes.fromhex(privkey_hex))
        except ValueError as e:
            raise InvalidParameter(f"Private key must be hex: {e}") from e

    @property
    def public_key(self) -> bytes:
        """Compressed format: 02/03 + x."""
        point = self._vk.pubkey.point
        prefix = b'\x02' if point.y() % 2 == 0 else b'\x03'
        return prefix + point.x().to_bytes(32, 'big')

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    def sign(self, sighash: bytes) -> bytes:
        """Sign a 32-byte digest (DER, no sighash type byte)."""
        if len(sighash) != 32:
            raise InvalidParameter(f"Sighash must be 32 bytes, got {len(sighash)}")
        return self._sk.sign_digest_deterministic(
            sighash, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )

    def verify(self, sighash: bytes, signature: bytes) -> bool:
        """Check a DER signature (with or without trailing sighash type)."""
        for candidate in (signature, signature[:-1]):
            try:
                if self._vk.verify_digest(candidate, sighash, sigdecode=sigdecode_der):
                    return True
            except (BadSignatureError, UnexpectedDER):
                continue
        return False

#!/usr/bin/env python3
"""Reference ECDSA signer tests."""

import sys
import os
import hashlib
import unittest

import base58
from ecdsa import SECP256k1
from ecdsa.util import sigdecode_der

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fillswap.htlc.signer import ECDSASigner, decode_wif
from fillswap.errors import InvalidParameter

# Generator point G (private key 1)
G_COMPRESSED = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
WIF_ONE_COMPRESSED = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"


class TestECDSASigner(unittest.TestCase):

    def setUp(self):
        self.signer = ECDSASigner((1).to_bytes(32, "big"))
        self.digest = hashlib.sha256(b"sighash").digest()

    def test_public_key_compressed(self):
        self.assertEqual(self.signer.public_key_hex, G_COMPRESSED)
        self.assertEqual(len(self.signer.public_key), 33)

    def test_sign_and_verify(self):
        sig = self.signer.sign(self.digest)
        self.assertTrue(self.signer.verify(self.digest, sig))
        self.assertTrue(self.signer.verify(self.digest, sig + b"\x01"))
        self.assertFalse(self.signer.verify(hashlib.sha256(b"other").digest(), sig))

    def test_signature_deterministic_and_low_s(self):
        sig = self.signer.sign(self.digest)
        self.assertEqual(sig, self.signer.sign(self.digest))
        _r, s = sigdecode_der(sig, SECP256k1.order)
        self.assertLessEqual(s, SECP256k1.order // 2)

    def test_rejects_bad_digest_length(self):
        with self.assertRaises(InvalidParameter):
            self.signer.sign(b"short")

    def test_rejects_bad_private_key(self):
        with self.assertRaises(InvalidParameter):
            ECDSASigner(b"\x01" * 31)
        with self.assertRaises(InvalidParameter):
            ECDSASigner.from_hex("zz")


class TestWIF(unittest.TestCase):

    def test_mainnet_compressed(self):
        privkey, compressed = decode_wif(WIF_ONE_COMPRESSED)
        self.assertEqual(privkey, (1).to_bytes(32, "big"))
        self.assertTrue(compressed)
        self.assertEqual(ECDSASigner.from_wif(WIF_ONE_COMPRESSED).public_key_hex, G_COMPRESSED)

    def test_testnet_compressed(self):
        key = b"\x22" * 32
        wif = base58.b58encode_check(b"\xef" + key + b"\x01").decode()
        self.assertEqual(decode_wif(wif), (key, True))

    def test_invalid_wif(self):
        with self.assertRaises(InvalidParameter):
            decode_wif(WIF_ONE_COMPRESSED[:-1] + "x")
        bad_prefix = base58.b58encode_check(b"\x01" + b"\x22" * 32).decode()
        with self.assertRaises(InvalidParameter):
            decode_wif(bad_prefix)


if __name__ == "__main__":
    unittest.main(verbosity=2)

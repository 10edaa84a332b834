#!/usr/bin/env python3
"""
Secret Manager Tests

Generation limits and uniqueness, hashing conventions, storage with
expiry, validation, rotation and reservation. Time is injected so expiry
needs no sleeping.
"""

import sys
import os
import hashlib
import unittest
from unittest.mock import patch

from web3 import Web3

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fillswap.config import FillConfig
from fillswap.core import SecretStats
from fillswap.errors import (
    InvalidParameter, InvalidSecretFormat, OutOfRange, SecretReuse, SecretGenerationFailed,
)
from fillswap.store import SecretStore
from fillswap.swap.secret_manager import SecretManager, hex_entropy, has_repeating_pattern


class FakeClock:
    def __init__(self, now: float = 1_700_000_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class SecretManagerTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = SecretStore()
        self.manager = SecretManager(store=self.store, clock=self.clock)


class TestGenerate(SecretManagerTestCase):

    def test_zero(self):
        self.assertEqual(self.manager.generate_many(0), [])

    def test_format_and_uniqueness(self):
        secrets = self.manager.generate_many(5)
        self.assertEqual(len(secrets), 5)
        self.assertEqual(len(set(secrets)), 5)
        for s in secrets:
            self.assertEqual(len(s), 64)
            self.assertEqual(s, s.lower())
            bytes.fromhex(s)

    def test_maximum(self):
        secrets = self.manager.generate_many(1000)
        self.assertEqual(len(set(secrets)), 1000)

    def test_out_of_range(self):
        for count in (-1, 1001, 2.5):
            with self.subTest(count=count):
                with self.assertRaises(OutOfRange):
                    self.manager.generate_many(count)

    def test_configured_maximum(self):
        manager = SecretManager(FillConfig(max_secrets=3))
        self.assertEqual(len(manager.generate_many(3)), 3)
        with self.assertRaises(OutOfRange):
            manager.generate_many(4)

    def test_avoids_active_secrets(self):
        taken = b"\x01" * 32
        fresh = b"\x02" * 32
        self.manager.store([taken.hex()], self.manager.hash_all([taken.hex()]))
        with patch("fillswap.swap.secret_manager._secrets.token_bytes", side_effect=[taken, taken, fresh]):
            self.assertEqual(self.manager.generate_many(1), [fresh.hex()])

    def test_avoids_duplicates_in_batch(self):
        a, b = b"\x03" * 32, b"\x04" * 32
        with patch("fillswap.swap.secret_manager._secrets.token_bytes", side_effect=[a, a, b]):
            self.assertEqual(self.manager.generate_many(2), [a.hex(), b.hex()])

    def test_exhausted_generator(self):
        taken = b"\x05" * 32
        self.manager.store([taken.hex()], self.manager.hash_all([taken.hex()]))
        with patch("fillswap.swap.secret_manager._secrets.token_bytes", return_value=taken):
            with self.assertRaises(SecretGenerationFailed) as ctx:
                self.manager.generate_many(2)
        self.assertIsInstance(ctx.exception, RuntimeError)


class TestHash(SecretManagerTestCase):

    def test_hash160(self):
        secrets = self.manager.generate_many(3)
        hashes = self.manager.hash_all(secrets)
        self.assertEqual(len(hashes), 3)
        self.assertTrue(all(len(h) == 40 for h in hashes))
        self.assertEqual(len(set(hashes)), 3)
        self.assertEqual(hashes, self.manager.hash_all(secrets))

    def test_sha256_and_keccak(self):
        secret = "11" * 32
        self.assertEqual(self.manager.hash_all([secret], "sha256"),
                         [hashlib.sha256(bytes.fromhex(secret)).hexdigest()])
        self.assertEqual(self.manager.hash_all([secret], "keccak256"),
                         [Web3.keccak(bytes.fromhex(secret)).hex().replace("0x", "")])

    def test_order_preserved(self):
        secrets = self.manager.generate_many(4)
        hashes = self.manager.hash_all(secrets)
        self.assertEqual([self.manager.hash_all([s])[0] for s in secrets], hashes)

    def test_malformed(self):
        for bad in (["xyz"], ["g" * 64], ["ab" * 31], [None]):
            with self.subTest(secrets=bad):
                with self.assertRaises(InvalidSecretFormat):
                    self.manager.hash_all(bad)

    def test_unknown_algorithm(self):
        with self.assertRaises(InvalidParameter):
            self.manager.hash_all(["11" * 32], "md5")

    def test_secret_to_hash_map(self):
        secrets = self.manager.generate_many(3)
        mapping = self.manager.create_secret_to_hash_map(secrets)
        self.assertEqual(list(mapping), secrets)
        self.assertEqual(list(mapping.values()), self.manager.hash_all(secrets))
        with self.assertRaises(InvalidParameter):
            self.manager.create_secret_to_hash_map([])


class TestStorage(SecretManagerTestCase):

    def test_expiry_scenario(self):
        secrets = self.manager.generate_many(3)
        hashes = self.manager.hash_all(secrets)
        self.assertTrue(all(len(h) == 40 for h in hashes))

        self.manager.store_with_expiration(secrets, hashes, 1000)
        self.clock.now += 500
        self.assertEqual(self.manager.lookup_hashes(secrets), hashes)

        self.clock.now += 600
        self.assertEqual(self.manager.lookup_hashes(secrets), [None, None, None])
        self.assertEqual(self.manager.storage_stats()["total_stored"], 0)

    def test_lookup_counts_usage(self):
        secrets = self.manager.generate_many(2)
        self.manager.store(secrets, self.manager.hash_all(secrets))
        self.manager.lookup_hashes(secrets)
        self.manager.lookup_hashes(secrets[:1])
        stats = self.manager.storage_stats()
        self.assertEqual(stats["total_stored"], 2)
        self.assertEqual(stats["average_usage"], 1.5)
        self.assertEqual(stats["oldest_created_at"], self.clock.now)

    def test_unknown_secret(self):
        self.assertEqual(self.manager.lookup_hashes(["11" * 32]), [None])

    def test_store_validation(self):
        secrets = self.manager.generate_many(2)
        hashes = self.manager.hash_all(secrets)
        with self.assertRaises(InvalidParameter):
            self.manager.store(secrets, hashes[:1])
        with self.assertRaises(InvalidParameter):
            self.manager.store(secrets, ["zz", "yy"])
        with self.assertRaises(InvalidParameter):
            self.manager.store_with_expiration(secrets, hashes, 0)

    def test_configured_expiry(self):
        manager = SecretManager(FillConfig(secret_expiry_ms=100), clock=self.clock)
        secrets = manager.generate_many(1)
        manager.store(secrets, manager.hash_all(secrets))
        self.clock.now += 101
        self.assertEqual(manager.lookup_hashes(secrets), [None])

    def test_cleanup_expired(self):
        secrets = self.manager.generate_many(3)
        hashes = self.manager.hash_all(secrets)
        self.manager.store_with_expiration(secrets[:2], hashes[:2], 10)
        self.manager.store(secrets[2:], hashes[2:])
        self.clock.now += 11
        self.assertEqual(self.manager.storage_stats()["expired_count"], 2)
        self.assertEqual(self.manager.cleanup_expired(), 2)
        self.assertEqual(self.manager.storage_stats()["total_stored"], 1)

    def test_empty_storage_stats(self):
        stats = self.manager.storage_stats()
        self.assertEqual(stats["total_stored"], 0)
        self.assertEqual(stats["average_usage"], 0)


class TestValidateRotate(SecretManagerTestCase):

    def test_validate(self):
        secret = self.manager.generate_many(1)[0]
        hash_hex = self.manager.hash_all([secret])[0]
        other = self.manager.hash_all(self.manager.generate_many(1))[0]
        self.assertTrue(self.manager.validate(secret, hash_hex))
        self.assertTrue(self.manager.validate(secret, hash_hex.upper()))
        self.assertFalse(self.manager.validate(secret, other))

    def test_validate_never_raises(self):
        for secret, hash_hex in (("xyz", "00" * 20), (None, None), ("11" * 32, 5)):
            with self.subTest(secret=secret):
                self.assertFalse(self.manager.validate(secret, hash_hex))
        self.assertFalse(self.manager.validate("11" * 32, "00" * 20, "md5"))

    def test_rotate(self):
        old = self.manager.generate_many(2)
        old_hashes = self.manager.hash_all(old)
        self.manager.store(old, old_hashes)
        new = self.manager.generate_many(2)
        new_hashes = self.manager.hash_all(new)

        self.manager.rotate(old, new)

        self.assertFalse(self.manager.validate(old[0], old_hashes[0]))
        self.assertEqual(self.manager.lookup_hashes(old), [None, None])
        self.assertTrue(self.manager.validate(new[0], new_hashes[0]))
        self.assertEqual(self.manager.lookup_hashes(new), new_hashes)

    def test_rotate_rejects_malformed_without_changes(self):
        old = self.manager.generate_many(1)
        old_hashes = self.manager.hash_all(old)
        self.manager.store(old, old_hashes)
        with self.assertRaises(InvalidSecretFormat):
            self.manager.rotate(old, ["xyz"])
        self.assertTrue(self.manager.validate(old[0], old_hashes[0]))

    def test_rotate_overlap(self):
        secrets = self.manager.generate_many(1)
        with self.assertRaises(InvalidParameter):
            self.manager.rotate(secrets, secrets)


class TestReserve(SecretManagerTestCase):

    def test_reserve_once(self):
        secret = self.manager.generate_many(1)[0]
        self.manager.reserve([secret], "pf_1")
        self.assertTrue(self.manager.is_reserved(secret))
        with self.assertRaises(SecretReuse):
            self.manager.reserve([secret], "pf_2")

    def test_all_or_nothing(self):
        a, b = self.manager.generate_many(2)
        self.manager.reserve([a], "pf_1")
        with self.assertRaises(SecretReuse):
            self.manager.reserve([b, a], "pf_2")
        self.assertFalse(self.manager.is_reserved(b))

    def test_duplicates_in_request(self):
        secret = self.manager.generate_many(1)[0]
        with self.assertRaises(SecretReuse):
            self.manager.reserve([secret, secret], "pf_1")


class TestSecretStrength(SecretManagerTestCase):

    WEAK = ["0" * 64, "ab" * 32, "0123456789abcdef" * 4, "deadbeef" * 8]

    def test_entropy(self):
        self.assertEqual(hex_entropy("0" * 64), 0.0)
        self.assertEqual(hex_entropy("0123456789abcdef" * 4), 1.0)
        self.assertGreater(hex_entropy(self.manager.generate_many(1)[0]), 0.75)

    def test_repeating_pattern(self):
        self.assertTrue(has_repeating_pattern("ab" * 32))
        self.assertTrue(has_repeating_pattern("0123456789ABCDEF" * 4))
        self.assertFalse(has_repeating_pattern(self.manager.generate_many(1)[0]))

    def test_rotate_rejects_weak_secrets(self):
        old = self.manager.generate_many(1)
        old_hashes = self.manager.hash_all(old)
        self.manager.store(old, old_hashes)
        for weak in self.WEAK:
            with self.subTest(secret=weak):
                with self.assertRaises(InvalidSecretFormat):
                    self.manager.rotate(old, [weak])
                self.assertEqual(self.manager.lookup_hashes([weak]), [None])
        self.assertTrue(self.manager.validate(old[0], old_hashes[0]))

    def test_reserve_rejects_weak_secrets(self):
        fresh = self.manager.generate_many(1)[0]
        for weak in self.WEAK:
            with self.subTest(secret=weak):
                with self.assertRaises(InvalidSecretFormat):
                    self.manager.reserve([fresh, weak], "pf_1")
        self.assertFalse(self.manager.is_reserved(fresh))


class TestStats(unittest.TestCase):

    def test_stats(self):
        stats = SecretManager.stats(["a" * 64, "a" * 64, "b" * 64])
        self.assertEqual(stats.count, 3)
        self.assertEqual(stats.unique_count, 2)
        self.assertEqual(stats.average_length, 64)
        self.assertAlmostEqual(stats.entropy_score, 2 / 3)

    def test_empty(self):
        self.assertEqual(SecretManager.stats([]), SecretStats())


if __name__ == "__main__":
    unittest.main(verbosity=2)

"""
Tests for omnilock_core.keys — key wiping, providers and the keystore format.

Covers:
  - PrivateKey validation, wiping and redacted repr
  - RawKeyProvider / KeystoreKeyProvider unlock() lifecycle
  - keystore encrypt / decrypt and wrong-password rejection
"""

from __future__ import annotations

import json
import unittest

import pytest

from builders import key_hex, pubkey_hash, secret
from omnilock_core.errors import ConfigError
from omnilock_core.keys import (
    KeystoreKeyProvider,
    PrivateKey,
    RawKeyProvider,
    read_keystore,
    write_keystore,
)

# cheap scrypt parameters keep the suite fast
FAST = {"n": 1 << 4, "r": 8, "p": 1}


class TestPrivateKey(unittest.TestCase):

    def test_from_hex(self):
        k = PrivateKey.from_hex(key_hex(1))
        self.assertEqual(k.secret, secret(1))
        self.assertEqual(k.pubkey_hash(), pubkey_hash(1))
        self.assertEqual(PrivateKey.from_hex(secret(1).hex()).secret, secret(1))

    def test_out_of_range(self):
        with self.assertRaises(ValueError):
            PrivateKey(bytes(32))
        with self.assertRaises(ValueError):
            PrivateKey(b"\xff" * 32)
        with self.assertRaises(ValueError):
            PrivateKey(b"\x01" * 31)

    def test_wipe(self):
        k = PrivateKey(secret(5))
        k.wipe()
        self.assertTrue(k.wiped)
        self.assertEqual(bytes(k._buf), bytes(32))
        with self.assertRaises(ValueError):
            k.sign(bytes(32))

    def test_context_manager_wipes(self):
        with PrivateKey(secret(5)) as k:
            k.sign(bytes(range(32)))
        self.assertTrue(k.wiped)

    def test_repr_hides_secret(self):
        k = PrivateKey(secret(0xABCDEF))
        self.assertNotIn("abcdef", repr(k))
        self.assertIn("redacted", repr(k))


class TestRawKeyProvider(unittest.TestCase):

    def test_unlock_wipes_on_exit(self):
        provider = RawKeyProvider([key_hex(1), key_hex(2)])
        with provider.unlock() as keys:
            self.assertEqual([k.pubkey_hash() for k in keys], [pubkey_hash(1), pubkey_hash(2)])
        self.assertTrue(all(k.wiped for k in keys))

    def test_unlock_wipes_on_error(self):
        provider = RawKeyProvider([key_hex(1)])
        with self.assertRaises(RuntimeError):
            with provider.unlock() as keys:
                raise RuntimeError("boom")
        self.assertTrue(keys[0].wiped)

    def test_empty(self):
        with self.assertRaises(ConfigError):
            RawKeyProvider([])

    def test_invalid_key(self):
        provider = RawKeyProvider([key_hex(1), "0x1234"])
        with self.assertRaises(ConfigError):
            with provider.unlock():
                pass


class TestKeystore(unittest.TestCase):

    def test_roundtrip(self):
        doc = write_keystore(PrivateKey(secret(7)), "hunter2", **FAST)
        self.assertEqual(doc["hash160"], pubkey_hash(7).hex())
        self.assertEqual(doc["crypto"]["cipher"], "aes-128-ctr")
        self.assertEqual(read_keystore(doc, "hunter2").secret, secret(7))

    def test_wrong_password(self):
        doc = write_keystore(PrivateKey(secret(7)), "hunter2", **FAST)
        with self.assertRaises(ConfigError):
            read_keystore(doc, "hunter3")

    def test_ciphertext_hides_secret(self):
        doc = write_keystore(PrivateKey(secret(7)), "pw", **FAST)
        self.assertNotIn(secret(7).hex(), json.dumps(doc))

    def test_unsupported_kdf(self):
        doc = write_keystore(PrivateKey(secret(7)), "pw", **FAST)
        doc["crypto"]["kdf"] = "pbkdf2"
        with self.assertRaises(ConfigError):
            read_keystore(doc, "pw")
        with self.assertRaises(ConfigError):
            read_keystore({}, "pw")


# ═══════════════════════════════════════════════════════════════════
#  Keystore directory
# ═══════════════════════════════════════════════════════════════════

def _store_key(directory, i, password="pw"):
    doc = write_keystore(PrivateKey(secret(i)), password, **FAST)
    path = directory / f"UTC--{i}.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


class TestKeystoreProvider:
    def test_finds_matching_file(self, tmp_path):
        _store_key(tmp_path, 1)
        wanted = _store_key(tmp_path, 2)
        provider = KeystoreKeyProvider(tmp_path, pubkey_hash(2), "pw")
        assert provider.find_file() == wanted
        with provider.unlock() as keys:
            assert keys[0].secret == secret(2)
        assert keys[0].wiped

    def test_skips_unreadable_files(self, tmp_path):
        (tmp_path / "broken.json").write_text("{", encoding="utf-8")
        _store_key(tmp_path, 3)
        provider = KeystoreKeyProvider(tmp_path, pubkey_hash(3), "pw")
        assert provider.find_file().name == "UTC--3.json"

    def test_unknown_account(self, tmp_path):
        _store_key(tmp_path, 1)
        with pytest.raises(ConfigError):
            KeystoreKeyProvider(tmp_path, pubkey_hash(9), "pw").find_file()

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigError):
            KeystoreKeyProvider(tmp_path / "nope", pubkey_hash(1), "pw").find_file()

    def test_wrong_password(self, tmp_path):
        _store_key(tmp_path, 1)
        provider = KeystoreKeyProvider(tmp_path, pubkey_hash(1), "wrong")
        with pytest.raises(ConfigError):
            with provider.unlock():
                pass

    def test_mislabelled_file(self, tmp_path):
        path = _store_key(tmp_path, 1)
        doc = json.loads(path.read_text(encoding="utf-8"))
        doc["hash160"] = pubkey_hash(2).hex()
        path.write_text(json.dumps(doc), encoding="utf-8")
        with pytest.raises(ConfigError):
            with KeystoreKeyProvider(tmp_path, pubkey_hash(2), "pw").unlock():
                pass

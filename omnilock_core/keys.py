"""
Private-key handling for the OmniLock signer.

Provides:
  - PrivateKey: a secp256k1 secret held in a wipeable buffer
  - KeyProvider backends selected at call time:
      RawKeyProvider      keys passed on the command line (hex)
      KeystoreKeyProvider passphrase-protected keystore files
  - write_keystore / read_keystore for the ckb-cli style keystore format
    (scrypt KDF, AES-128-CTR, keccak256 MAC)

Keys are only handed out inside ``KeyProvider.unlock()``; every exit path
from that block wipes them.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt
from ecdsa import SECP256k1

from omnilock_core.crypto_utils import (
    blake160,
    keccak256,
    public_key_from_private,
    sign_recoverable,
)
from omnilock_core.errors import ConfigError
from omnilock_core.transaction import bytes_to_hex, hex_to_bytes, strip_0x

logger = logging.getLogger("omnilock_keys")

DEFAULT_SCRYPT_N = 1 << 18
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1


class PrivateKey:
    """A secp256k1 secret that scrubs its bytes when wiped or released."""

    def __init__(self, secret: bytes | bytearray):
        self._buf = bytearray(secret)
        if len(self._buf) != 32 or not 0 < int.from_bytes(self._buf, "big") < SECP256k1.order:
            self.wipe()
            raise ValueError("invalid secp256k1 private key")
        self._wiped = False

    @classmethod
    def from_hex(cls, value: str) -> PrivateKey:
        raw = bytearray.fromhex(strip_0x(value.strip()))
        try:
            return cls(raw)
        finally:
            raw[:] = bytes(len(raw))

    @property
    def wiped(self) -> bool:
        return self._wiped

    @property
    def secret(self) -> bytes:
        if self._wiped:
            raise ValueError("private key has been wiped")
        return bytes(self._buf)

    def public_key(self, compressed: bool = True) -> bytes:
        return public_key_from_private(self.secret, compressed)

    def pubkey_hash(self) -> bytes:
        """blake160 of the compressed public key (the sighash lock arg)."""
        return blake160(self.public_key())

    def sign(self, digest: bytes) -> bytes:
        return sign_recoverable(self.secret, digest)

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._wiped = True

    def __enter__(self) -> PrivateKey:
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __del__(self):
        buf = getattr(self, "_buf", None)
        if buf is not None:
            buf[:] = bytes(len(buf))

    def __repr__(self) -> str:
        return "PrivateKey(<wiped>)" if self._wiped else "PrivateKey(<redacted>)"


# ===================================================================
#  Key providers
# ===================================================================

class KeyProvider:
    """Source of signing keys; subclasses implement ``_load``."""

    def _load(self) -> list[PrivateKey]:
        raise NotImplementedError

    @contextmanager
    def unlock(self) -> Iterator[list[PrivateKey]]:
        keys = self._load()
        try:
            yield keys
        finally:
            for key in keys:
                key.wipe()


class RawKeyProvider(KeyProvider):
    """Keys given directly as hex strings."""

    def __init__(self, hex_keys: list[str]):
        if not hex_keys:
            raise ConfigError("at least one private key is required")
        self._hex_keys = list(hex_keys)

    def _load(self) -> list[PrivateKey]:
        keys: list[PrivateKey] = []
        try:
            for value in self._hex_keys:
                keys.append(PrivateKey.from_hex(value))
        except ValueError as exc:
            for key in keys:
                key.wipe()
            raise ConfigError(f"invalid private key: {exc}") from exc
        return keys


class KeystoreKeyProvider(KeyProvider):
    """A single key exported from a passphrase-protected keystore directory."""

    def __init__(self, keystore_dir: str | Path, hash160: bytes, password: str):
        self.keystore_dir = Path(keystore_dir).expanduser()
        self.hash160 = bytes(hash160)
        self._password = password

    def find_file(self) -> Path:
        if not self.keystore_dir.is_dir():
            raise ConfigError(f"keystore directory {self.keystore_dir} does not exist")
        wanted = self.hash160.hex()
        for path in sorted(self.keystore_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning(f"Skipping unreadable keystore file {path}: {exc}")
                continue
            if strip_0x(str(data.get("hash160", ""))).lower() == wanted:
                return path
        raise ConfigError(f"no key for {bytes_to_hex(self.hash160)} in {self.keystore_dir}")

    def _load(self) -> list[PrivateKey]:
        path = self.find_file()
        data = json.loads(path.read_text(encoding="utf-8"))
        key = read_keystore(data, self._password)
        if key.pubkey_hash() != self.hash160:
            key.wipe()
            raise ConfigError(f"keystore file {path} holds a different key")
        logger.info(f"Exported key {bytes_to_hex(self.hash160)} from {path.name}")
        return [key]


# ===================================================================
#  Keystore format
# ===================================================================

def _derive(password: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    return scrypt(password.encode("utf-8"), salt, 32, N=n, r=r, p=p)


def write_keystore(
    key: PrivateKey, password: str,
    n: int = DEFAULT_SCRYPT_N, r: int = DEFAULT_SCRYPT_R, p: int = DEFAULT_SCRYPT_P,
) -> dict:
    """Encrypt ``key`` into a keystore JSON document."""
    salt = os.urandom(32)
    iv = os.urandom(16)
    derived = _derive(password, salt, n, r, p)
    cipher = AES.new(derived[:16], AES.MODE_CTR, nonce=b"", initial_value=iv)
    ciphertext = cipher.encrypt(key.secret)
    mac = keccak256(derived[16:32] + ciphertext)
    return {
        "id": str(uuid.uuid4()),
        "version": 3,
        "origin": "omnilock",
        "hash160": key.pubkey_hash().hex(),
        "crypto": {
            "cipher": "aes-128-ctr",
            "cipherparams": {"iv": iv.hex()},
            "ciphertext": ciphertext.hex(),
            "kdf": "scrypt",
            "kdfparams": {"dklen": 32, "n": n, "r": r, "p": p, "salt": salt.hex()},
            "mac": mac.hex(),
        },
    }


def read_keystore(data: dict, password: str) -> PrivateKey:
    """Decrypt a keystore document; a wrong password raises ``ConfigError``."""
    crypto = data.get("crypto") or data.get("Crypto")
    if not crypto:
        raise ConfigError("keystore has no crypto section")
    if crypto.get("cipher") != "aes-128-ctr" or crypto.get("kdf") != "scrypt":
        raise ConfigError(
            f"unsupported keystore cipher/kdf {crypto.get('cipher')}/{crypto.get('kdf')}"
        )
    params = crypto["kdfparams"]
    derived = _derive(
        password, hex_to_bytes(params["salt"]),
        int(params["n"]), int(params["r"]), int(params["p"]),
    )
    ciphertext = hex_to_bytes(crypto["ciphertext"])
    if keccak256(derived[16:32] + ciphertext) != hex_to_bytes(crypto["mac"]):
        raise ConfigError("keystore password is incorrect")
    iv = hex_to_bytes(crypto["cipherparams"]["iv"])
    cipher = AES.new(derived[:16], AES.MODE_CTR, nonce=b"", initial_value=iv)
    plaintext = bytearray(cipher.decrypt(ciphertext))
    try:
        # extended (secret || chain code) keys carry the secret first
        return PrivateKey(plaintext[:32])
    finally:
        plaintext[:] = bytes(len(plaintext))

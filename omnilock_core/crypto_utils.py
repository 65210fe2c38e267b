"""
Cryptographic primitives used by the OmniLock signer.

Provides:
  - CKB blake2b-256 / blake160 hashing
  - Keccak-256 / keccak160 (Ethereum-style identities)
  - secp256k1 public-key derivation
  - 65-byte recoverable ECDSA signatures (r || s || recovery id)
"""

from __future__ import annotations

import hashlib

from Crypto.Hash import keccak
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string_canonize

CKB_HASH_PERSONALIZATION = b"ckb-default-hash"
SIGNATURE_SIZE = 65
ETHEREUM_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"


# ===================================================================
#  Hashing
# ===================================================================

def blake2b_256(data: bytes) -> bytes:
    """CKB default hash: blake2b-256 personalised with ``ckb-default-hash``."""
    return hashlib.blake2b(
        data, digest_size=32, person=CKB_HASH_PERSONALIZATION,
    ).digest()


def new_blake2b():
    """Incremental hasher with the CKB personalisation."""
    return hashlib.blake2b(digest_size=32, person=CKB_HASH_PERSONALIZATION)


def blake160(data: bytes) -> bytes:
    """First 20 bytes of :func:`blake2b_256`."""
    return blake2b_256(data)[:20]


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def keccak160(public_key: bytes) -> bytes:
    """
    Ethereum address bytes of an uncompressed public key.

    Accepts the 65-byte ``0x04``-prefixed form or the bare 64-byte form.
    """
    if len(public_key) == 65 and public_key[0] == 4:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError("keccak160 needs an uncompressed public key")
    return keccak256(public_key)[12:]


def ethereum_message_hash(digest: bytes) -> bytes:
    """Wrap a 32-byte digest in the Ethereum signed-message envelope."""
    return keccak256(ETHEREUM_MESSAGE_PREFIX + digest)


# ===================================================================
#  secp256k1
# ===================================================================

def public_key_from_private(private_key: bytes, compressed: bool = True) -> bytes:
    """Derive the 33-byte compressed (or 65-byte uncompressed) public key."""
    sk = SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    vk = sk.get_verifying_key()
    return vk.to_string("compressed" if compressed else "uncompressed")


def compress_public_key(public_key: bytes) -> bytes:
    if len(public_key) == 33:
        return bytes(public_key)
    vk = VerifyingKey.from_string(bytes(public_key), curve=SECP256k1)
    return vk.to_string("compressed")


def uncompress_public_key(public_key: bytes) -> bytes:
    if len(public_key) == 65:
        return bytes(public_key)
    vk = VerifyingKey.from_string(bytes(public_key), curve=SECP256k1)
    return vk.to_string("uncompressed")


def _recovery_candidates(signature: bytes, digest: bytes) -> list[VerifyingKey]:
    return VerifyingKey.from_public_key_recovery_with_digest(
        signature[:64], digest, SECP256k1,
        hashfunc=hashlib.sha256, sigdecode=sigdecode_string,
    )


def sign_recoverable(private_key: bytes, digest: bytes) -> bytes:
    """
    Sign a 32-byte digest, returning ``r || s || recid`` (65 bytes).

    Signing is deterministic (RFC 6979) with a low-s normalised ``s``, so
    signing the same digest twice with the same key yields identical bytes.
    """
    if len(digest) != 32:
        raise ValueError("digest must be 32 bytes")
    sk = SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    rs = sk.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_string_canonize,
    )
    expected = sk.get_verifying_key().to_string("compressed")
    for recid, candidate in enumerate(_recovery_candidates(rs, digest)):
        if candidate.to_string("compressed") == expected:
            return rs + bytes([recid])
    raise ValueError("unable to compute recovery id")


def recover_public_key(digest: bytes, signature: bytes) -> bytes:
    """Recover the compressed public key from a 65-byte signature."""
    if len(signature) != SIGNATURE_SIZE:
        raise ValueError("recoverable signature must be 65 bytes")
    recid = signature[64]
    try:
        candidates = _recovery_candidates(signature, digest)
    except Exception as exc:  # ecdsa raises several unrelated types here
        raise ValueError(f"unrecoverable signature: {exc}") from exc
    if recid >= len(candidates):
        raise ValueError(f"invalid recovery id {recid}")
    return candidates[recid].to_string("compressed")

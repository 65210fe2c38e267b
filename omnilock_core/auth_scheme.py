"""
OmniLock authorization schemes.

Provides:
  - PubkeyHash / Ethereum / Multisig scheme variants
  - MultisigConfig (ordered M-of-N list of blake160 hashes)
  - OpentxInput (open-transaction signed-range metadata)
  - identity checks, lock-script args and the JSON config form

Mirrors the identity flags of the OmniLock script: 0x00 for a secp256k1
blake160 pubkey hash, 0x01 for an Ethereum address and 0x06 for multisig.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar

from omnilock_core.crypto_utils import (
    SIGNATURE_SIZE,
    blake160,
    compress_public_key,
    ethereum_message_hash,
    keccak160,
    uncompress_public_key,
)
from omnilock_core.errors import ConfigError, IdentityMismatch
from omnilock_core.transaction import bytes_to_hex, hex_to_bytes

MULTISIG_VERSION = 0
OPENTX_COMMAND_SIZE = 4


class IdentityFlag(IntEnum):
    PUBKEY_HASH = 0x00
    ETHEREUM = 0x01
    MULTISIG = 0x06


FLAG_NAMES = {
    IdentityFlag.PUBKEY_HASH: "PubkeyHash",
    IdentityFlag.ETHEREUM: "Ethereum",
    IdentityFlag.MULTISIG: "Multisig",
}


def _check_hash160(value: bytes, what: str) -> bytes:
    value = bytes(value)
    if len(value) != 20:
        raise ConfigError(f"{what} must be 20 bytes, got {len(value)}")
    return value


@dataclass(frozen=True)
class MultisigConfig:
    """An ordered M-of-N list of sighash (blake160) identities."""
    sighash_addresses: tuple[bytes, ...]
    require_first_n: int
    threshold: int

    def __post_init__(self):
        hashes = tuple(
            _check_hash160(h, "sighash address") for h in self.sighash_addresses
        )
        object.__setattr__(self, "sighash_addresses", hashes)
        if not hashes:
            raise ConfigError("Must have at least one sighash address")
        if len(hashes) > 255:
            raise ConfigError(f"Too many sighash addresses ({len(hashes)} > 255)")
        if len(set(hashes)) != len(hashes):
            raise ConfigError("Duplicate sighash addresses in multisig config")
        if not 0 < self.threshold <= len(hashes):
            raise ConfigError(
                f"Threshold {self.threshold} must be between 1 and {len(hashes)}"
            )
        if not 0 <= self.require_first_n <= self.threshold:
            raise ConfigError(
                f"require_first_n ({self.require_first_n}) "
                f"must not exceed threshold ({self.threshold})"
            )

    @property
    def n(self) -> int:
        return len(self.sighash_addresses)

    def to_witness_data(self) -> bytes:
        """``version | require_first_n | threshold | N | hash160 * N``."""
        header = bytes([MULTISIG_VERSION, self.require_first_n, self.threshold, self.n])
        return header + b"".join(self.sighash_addresses)

    def hash160(self) -> bytes:
        return blake160(self.to_witness_data())

    def index_of(self, hash160: bytes) -> int | None:
        try:
            return self.sighash_addresses.index(bytes(hash160))
        except ValueError:
            return None

    def to_dict(self) -> dict:
        return {
            "sighash_addresses": [bytes_to_hex(h) for h in self.sighash_addresses],
            "require_first_n": self.require_first_n,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, d: dict) -> MultisigConfig:
        return cls(
            tuple(hex_to_bytes(h) for h in d["sighash_addresses"]),
            int(d["require_first_n"]),
            int(d["threshold"]),
        )


@dataclass(frozen=True)
class OpentxInput:
    """
    Open-transaction signed-range metadata.

    Serialised into the witness-lock header as
    ``u16 base_input_index | u16 base_output_index | command * k | u32 salt``
    where each command packs ``cmd(8) | arg1(12) | arg2(12)`` little endian.
    """
    base_input_index: int
    base_output_index: int
    input_commands: tuple[tuple[int, int, int], ...] = ()
    salt: int = 0

    def __post_init__(self):
        commands = tuple(tuple(int(x) for x in c) for c in self.input_commands)
        object.__setattr__(self, "input_commands", commands)
        for idx in (self.base_input_index, self.base_output_index):
            if not 0 <= idx <= 0xFFFF:
                raise ConfigError(f"open-tx base index {idx} out of range")
        for cmd in commands:
            if len(cmd) != 3:
                raise ConfigError("open-tx command must be (cmd, arg1, arg2)")
            op, arg1, arg2 = cmd
            if not 0 <= op <= 0xFF or not 0 <= arg1 <= 0xFFF or not 0 <= arg2 <= 0xFFF:
                raise ConfigError(f"open-tx command {cmd} out of range")
        if not 0 <= self.salt <= 0xFFFFFFFF:
            raise ConfigError("open-tx salt must fit in 32 bits")

    @property
    def sig_data_len(self) -> int:
        return 4 + OPENTX_COMMAND_SIZE * len(self.input_commands) + 4

    def sig_data(self) -> bytes:
        out = struct.pack("<HH", self.base_input_index, self.base_output_index)
        for op, arg1, arg2 in self.input_commands:
            out += struct.pack("<I", op | (arg1 << 8) | (arg2 << 20))
        return out + struct.pack("<I", self.salt)

    def to_dict(self) -> dict:
        return {
            "base_input_index": self.base_input_index,
            "base_output_index": self.base_output_index,
            "input_commands": [list(c) for c in self.input_commands],
            "salt": self.salt,
        }

    @classmethod
    def from_dict(cls, d: dict) -> OpentxInput:
        return cls(
            int(d["base_input_index"]),
            int(d["base_output_index"]),
            tuple(tuple(c) for c in d.get("input_commands", [])),
            int(d.get("salt", 0)),
        )


class AuthScheme:
    """Base class of the OmniLock authorization variants."""

    flag: ClassVar[IdentityFlag]
    opentx_input: OpentxInput | None

    # ---- identity ----

    def auth_content(self) -> bytes:
        raise NotImplementedError

    def identity_hash(self, public_key: bytes) -> bytes:
        """Scheme-specific 20-byte hash of a public key."""
        return blake160(compress_public_key(public_key))

    def matches_identity(self, public_key: bytes) -> bool:
        return self.identity_hash(public_key) == self.auth_content()

    def require_identity(self, public_key: bytes) -> None:
        """Raise ``IdentityMismatch`` unless the key is authorized."""
        if not self.matches_identity(public_key):
            raise IdentityMismatch(
                f"can not find hash {bytes_to_hex(self.identity_hash(public_key))} "
                f"in omnilock config"
            )

    def slot_of(self, public_key: bytes) -> int | None:
        return 0 if self.matches_identity(public_key) else None

    # ---- witness layout ----

    @property
    def is_multisig(self) -> bool:
        return self.flag == IdentityFlag.MULTISIG

    @property
    def is_opentx_mode(self) -> bool:
        return self.opentx_input is not None

    @property
    def slot_count(self) -> int:
        return 1

    @property
    def threshold(self) -> int:
        return 1

    @property
    def require_first_n(self) -> int:
        return 0

    def header(self) -> bytes:
        return self.opentx_input.sig_data() if self.opentx_input else b""

    def config_bytes(self) -> bytes:
        return b""

    @property
    def lock_len(self) -> int:
        return len(self.header()) + len(self.config_bytes()) + SIGNATURE_SIZE * self.slot_count

    def slot_hash(self, slot: int) -> bytes:
        """Identity expected to fill ``slot``."""
        return self.auth_content()

    # ---- signing ----

    def signing_message(self, digest: bytes) -> bytes:
        return digest

    def build_args(self) -> bytes:
        """``flag | auth_content | omni_lock_flags`` used as lock-script args."""
        return bytes([self.flag]) + self.auth_content() + b"\x00"

    # ---- serialisation ----

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": {
                "flag": FLAG_NAMES[self.flag],
                "auth_content": bytes_to_hex(self.auth_content()),
            },
            "multisig_config": None,
            "omni_lock_flags": 0,
            "opentx_input": self.opentx_input.to_dict() if self.opentx_input else None,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> AuthScheme:
        ident = d.get("id") or {}
        flag_name = ident.get("flag")
        auth_content = hex_to_bytes(ident.get("auth_content", "0x"))
        if d.get("omni_lock_flags", 0):
            raise ConfigError(f"unsupported omni_lock_flags {d['omni_lock_flags']}")
        opentx = d.get("opentx_input")
        opentx_input = OpentxInput.from_dict(opentx) if opentx else None
        multisig = d.get("multisig_config")
        if flag_name == "PubkeyHash":
            return PubkeyHash(auth_content, opentx_input)
        if flag_name == "Ethereum":
            return Ethereum(auth_content, opentx_input)
        if flag_name == "Multisig":
            if not multisig:
                raise ConfigError("multisig scheme without multisig_config")
            scheme = Multisig(MultisigConfig.from_dict(multisig), opentx_input)
            if auth_content and auth_content != scheme.auth_content():
                raise ConfigError("auth_content does not match the multisig config hash")
            return scheme
        raise ConfigError(f"unsupported identity flag {flag_name!r}")


@dataclass(frozen=True)
class PubkeyHash(AuthScheme):
    """blake160 of a compressed secp256k1 public key."""
    hash160: bytes
    opentx_input: OpentxInput | None = None

    flag: ClassVar[IdentityFlag] = IdentityFlag.PUBKEY_HASH

    def __post_init__(self):
        object.__setattr__(self, "hash160", _check_hash160(self.hash160, "pubkey hash"))

    def auth_content(self) -> bytes:
        return self.hash160


@dataclass(frozen=True)
class Ethereum(AuthScheme):
    """Ethereum address: keccak160 of the uncompressed public key."""
    hash160: bytes
    opentx_input: OpentxInput | None = None

    flag: ClassVar[IdentityFlag] = IdentityFlag.ETHEREUM

    def __post_init__(self):
        object.__setattr__(self, "hash160", _check_hash160(self.hash160, "ethereum address"))

    def auth_content(self) -> bytes:
        return self.hash160

    def identity_hash(self, public_key: bytes) -> bytes:
        return keccak160(uncompress_public_key(public_key))

    def signing_message(self, digest: bytes) -> bytes:
        return ethereum_message_hash(digest)


@dataclass(frozen=True)
class Multisig(AuthScheme):
    config: MultisigConfig
    opentx_input: OpentxInput | None = None

    flag: ClassVar[IdentityFlag] = IdentityFlag.MULTISIG

    def auth_content(self) -> bytes:
        return self.config.hash160()

    def matches_identity(self, public_key: bytes) -> bool:
        return self.slot_of(public_key) is not None

    def slot_of(self, public_key: bytes) -> int | None:
        return self.config.index_of(self.identity_hash(public_key))

    @property
    def slot_count(self) -> int:
        return self.config.n

    @property
    def threshold(self) -> int:
        return self.config.threshold

    @property
    def require_first_n(self) -> int:
        return self.config.require_first_n

    def config_bytes(self) -> bytes:
        return self.config.to_witness_data()

    def slot_hash(self, slot: int) -> bytes:
        return self.config.sighash_addresses[slot]

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["multisig_config"] = self.config.to_dict()
        return d


def new_multisig(
    sighash_addresses: list[bytes], require_first_n: int, threshold: int,
    opentx_input: OpentxInput | None = None,
) -> Multisig:
    """Build a multisig scheme, validating the M-of-N parameters."""
    return Multisig(MultisigConfig(tuple(sighash_addresses), require_first_n, threshold), opentx_input)

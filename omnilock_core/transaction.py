"""
CKB transaction data model.

Covers:
  - OutPoint, CellDep, CellInput, Script, CellOutput, Transaction
  - CKB JSON-RPC representation (hex quantities, named enums)
  - molecule serialization of the raw transaction and script hashing
  - WitnessArgs access for the witness that carries the lock field
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from omnilock_core import molecule
from omnilock_core.crypto_utils import blake2b_256
from omnilock_core.errors import MalformedWitness

HASH_TYPES = {"data": 0, "type": 1, "data1": 2, "data2": 4}
DEP_TYPES = {"code": 0, "dep_group": 1}


# ── hex helpers ──────────────────────────────────────────────────

def strip_0x(value: str) -> str:
    if value.startswith(("0x", "0X")):
        return value[2:]
    return value


def hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(strip_0x(value))


def bytes_to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def hex_to_int(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return int(strip_0x(value) or "0", 16)


def int_to_hex(value: int) -> str:
    return hex(value)


def _hash32(value: str) -> bytes:
    data = hex_to_bytes(value)
    if len(data) != 32:
        raise ValueError(f"expected a 32-byte hash, got {len(data)} bytes")
    return data


# ── data model ───────────────────────────────────────────────────

@dataclass(frozen=True)
class OutPoint:
    tx_hash: bytes
    index: int

    def serialize(self) -> bytes:
        return self.tx_hash + molecule.pack_u32(self.index)

    def to_dict(self) -> dict:
        return {"tx_hash": bytes_to_hex(self.tx_hash), "index": int_to_hex(self.index)}

    @classmethod
    def from_dict(cls, d: dict) -> OutPoint:
        return cls(_hash32(d["tx_hash"]), hex_to_int(d["index"]))

    def __str__(self) -> str:
        return f"{bytes_to_hex(self.tx_hash)}:{self.index}"


@dataclass(frozen=True)
class CellDep:
    out_point: OutPoint
    dep_type: str = "code"

    def serialize(self) -> bytes:
        return self.out_point.serialize() + bytes([DEP_TYPES[self.dep_type]])

    def to_dict(self) -> dict:
        return {"out_point": self.out_point.to_dict(), "dep_type": self.dep_type}

    @classmethod
    def from_dict(cls, d: dict) -> CellDep:
        dep_type = d.get("dep_type", "code")
        if dep_type not in DEP_TYPES:
            raise ValueError(f"unknown dep_type {dep_type!r}")
        return cls(OutPoint.from_dict(d["out_point"]), dep_type)


@dataclass(frozen=True)
class CellInput:
    previous_output: OutPoint
    since: int = 0

    def serialize(self) -> bytes:
        return molecule.pack_u64(self.since) + self.previous_output.serialize()

    def to_dict(self) -> dict:
        return {
            "since": int_to_hex(self.since),
            "previous_output": self.previous_output.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> CellInput:
        return cls(OutPoint.from_dict(d["previous_output"]), hex_to_int(d.get("since", "0x0")))


@dataclass(frozen=True)
class Script:
    code_hash: bytes
    hash_type: str
    args: bytes = b""

    def serialize(self) -> bytes:
        return molecule.pack_table([
            self.code_hash,
            bytes([HASH_TYPES[self.hash_type]]),
            molecule.pack_bytes(self.args),
        ])

    def script_hash(self) -> bytes:
        return blake2b_256(self.serialize())

    def to_dict(self) -> dict:
        return {
            "code_hash": bytes_to_hex(self.code_hash),
            "hash_type": self.hash_type,
            "args": bytes_to_hex(self.args),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Script:
        if d["hash_type"] not in HASH_TYPES:
            raise ValueError(f"unknown hash_type {d['hash_type']!r}")
        return cls(_hash32(d["code_hash"]), d["hash_type"], hex_to_bytes(d.get("args", "0x")))


@dataclass(frozen=True)
class CellOutput:
    capacity: int
    lock: Script
    type: Script | None = None

    def serialize(self) -> bytes:
        return molecule.pack_table([
            molecule.pack_u64(self.capacity),
            self.lock.serialize(),
            self.type.serialize() if self.type else b"",
        ])

    def to_dict(self) -> dict:
        return {
            "capacity": int_to_hex(self.capacity),
            "lock": self.lock.to_dict(),
            "type": self.type.to_dict() if self.type else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CellOutput:
        type_script = d.get("type")
        return cls(
            capacity=hex_to_int(d["capacity"]),
            lock=Script.from_dict(d["lock"]),
            type=Script.from_dict(type_script) if type_script else None,
        )


@dataclass
class Transaction:
    """A CKB transaction; witnesses are raw byte strings."""
    version: int = 0
    cell_deps: list[CellDep] = field(default_factory=list)
    header_deps: list[bytes] = field(default_factory=list)
    inputs: list[CellInput] = field(default_factory=list)
    outputs: list[CellOutput] = field(default_factory=list)
    outputs_data: list[bytes] = field(default_factory=list)
    witnesses: list[bytes] = field(default_factory=list)

    # ---- hashing ----

    def serialize_raw(self) -> bytes:
        """Molecule ``RawTransaction`` (everything except witnesses)."""
        return molecule.pack_table([
            molecule.pack_u32(self.version),
            molecule.pack_fixvec([d.serialize() for d in self.cell_deps]),
            molecule.pack_fixvec(list(self.header_deps)),
            molecule.pack_fixvec([i.serialize() for i in self.inputs]),
            molecule.pack_dynvec([o.serialize() for o in self.outputs]),
            molecule.pack_dynvec([molecule.pack_bytes(d) for d in self.outputs_data]),
        ])

    def hash(self) -> bytes:
        """Transaction hash; unaffected by witness changes."""
        return blake2b_256(self.serialize_raw())

    # ---- witnesses ----

    def witness_lock(self, index: int = 0) -> bytes:
        """Lock field of the WitnessArgs at ``index``."""
        if index >= len(self.witnesses):
            raise MalformedWitness(f"transaction has no witness at index {index}")
        lock, _, _ = molecule.unpack_witness_args(self.witnesses[index])
        if lock is None:
            raise MalformedWitness(f"witness {index} has no lock field")
        return lock

    def set_witness_lock(self, index: int, lock: bytes) -> None:
        """Replace only the lock field of witness ``index``."""
        if index >= len(self.witnesses):
            raise MalformedWitness(f"transaction has no witness at index {index}")
        _, input_type, output_type = molecule.unpack_witness_args(self.witnesses[index])
        self.witnesses[index] = molecule.pack_witness_args(lock, input_type, output_type)

    def pad_witnesses(self) -> None:
        """Append empty witnesses until every input has one."""
        missing = len(self.inputs) - len(self.witnesses)
        if missing > 0:
            self.witnesses.extend([b""] * missing)

    def copy(self) -> Transaction:
        return copy.deepcopy(self)

    # ---- serialisation ----

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": int_to_hex(self.version),
            "cell_deps": [d.to_dict() for d in self.cell_deps],
            "header_deps": [bytes_to_hex(h) for h in self.header_deps],
            "inputs": [i.to_dict() for i in self.inputs],
            "outputs": [o.to_dict() for o in self.outputs],
            "outputs_data": [bytes_to_hex(d) for d in self.outputs_data],
            "witnesses": [bytes_to_hex(w) for w in self.witnesses],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Transaction:
        return cls(
            version=hex_to_int(d.get("version", "0x0")),
            cell_deps=[CellDep.from_dict(x) for x in d.get("cell_deps", [])],
            header_deps=[_hash32(h) for h in d.get("header_deps", [])],
            inputs=[CellInput.from_dict(x) for x in d.get("inputs", [])],
            outputs=[CellOutput.from_dict(x) for x in d.get("outputs", [])],
            outputs_data=[hex_to_bytes(x) for x in d.get("outputs_data", [])],
            witnesses=[hex_to_bytes(w) for w in d.get("witnesses", [])],
        )

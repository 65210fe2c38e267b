"""
Transaction envelope: the unit persisted between signing rounds.

An envelope pairs the in-progress transaction with the AuthScheme it was
built for.  ``witnesses[0]`` is a WitnessArgs whose lock field holds the
OmniLock witness lock; signing rounds only ever rewrite that field.

File format (JSON):
    {"transaction": <CKB JSON transaction>, "omnilock_config": {...}}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from omnilock_core import molecule
from omnilock_core.auth_scheme import AuthScheme
from omnilock_core.errors import ConfigError, InconsistentState, MalformedWitness
from omnilock_core.progress import Progress, assess
from omnilock_core.transaction import Transaction, bytes_to_hex
from omnilock_core.witness_lock import EMPTY_SLOT, WitnessLock, WitnessLockCodec

logger = logging.getLogger("omnilock_envelope")

LOCK_WITNESS_INDEX = 0


@dataclass
class TransactionEnvelope:
    transaction: Transaction
    auth_scheme: AuthScheme

    @classmethod
    def create(cls, transaction: Transaction, scheme: AuthScheme) -> TransactionEnvelope:
        """
        Start an envelope: witness 0 gets the placeholder lock for ``scheme``
        and every other input gets an empty witness.
        """
        tx = transaction.copy()
        zero_lock = WitnessLockCodec(scheme).placeholder()
        if not tx.witnesses:
            tx.witnesses.append(molecule.pack_witness_args(zero_lock))
        elif not tx.witnesses[LOCK_WITNESS_INDEX]:
            tx.witnesses[LOCK_WITNESS_INDEX] = molecule.pack_witness_args(zero_lock)
        else:
            tx.set_witness_lock(LOCK_WITNESS_INDEX, zero_lock)
        tx.pad_witnesses()
        return cls(tx, scheme)

    # ---- accessors ----

    @property
    def lock_field(self) -> bytes:
        return self.transaction.witness_lock(LOCK_WITNESS_INDEX)

    @property
    def tx_hash(self) -> bytes:
        return self.transaction.hash()

    def decode_lock(self) -> WitnessLock:
        return WitnessLockCodec(self.auth_scheme).decode(self.lock_field)

    def has_signatures(self) -> bool:
        return not self.decode_lock().is_placeholder()

    def progress(self) -> Progress:
        return assess(self.lock_field, self.auth_scheme)

    def with_transaction(self, transaction: Transaction) -> TransactionEnvelope:
        return TransactionEnvelope(transaction, self.auth_scheme)

    def validate(self) -> None:
        if not self.transaction.witnesses:
            raise MalformedWitness("envelope transaction has no witnesses")
        self.decode_lock()

    # ---- merging ----

    def merge(self, other: TransactionEnvelope) -> TransactionEnvelope:
        """
        Combine the signature slots of two copies of the same envelope.

        Both copies must share the transaction hash, the scheme and every
        witness other than the lock field.  A slot filled differently in the
        two copies raises ``InconsistentState``.
        """
        if self.auth_scheme != other.auth_scheme:
            raise InconsistentState("cannot merge envelopes with different schemes")
        if self.tx_hash != other.tx_hash:
            raise InconsistentState("cannot merge envelopes of different transactions")
        tx, theirs = self.transaction.copy(), other.transaction.copy()
        tx.pad_witnesses()
        theirs.pad_witnesses()
        if len(tx.witnesses) != len(theirs.witnesses) or tx.witnesses[1:] != theirs.witnesses[1:]:
            raise InconsistentState("envelopes differ outside the lock field")

        codec = WitnessLockCodec(self.auth_scheme)
        a, b = self.decode_lock(), other.decode_lock()
        slots = []
        for i, (sa, sb) in enumerate(zip(a.slots, b.slots)):
            if sa != EMPTY_SLOT and sb != EMPTY_SLOT and sa != sb:
                raise InconsistentState(f"slot {i} is signed differently in the two envelopes")
            slots.append(sa if sa != EMPTY_SLOT else sb)
        merged = WitnessLock(
            header=a.header if any(a.header) else b.header,
            config=a.config if any(a.config) else b.config,
            slots=slots,
        )
        tx.set_witness_lock(LOCK_WITNESS_INDEX, codec.encode(merged))
        logger.info(f"Merged envelopes for tx {bytes_to_hex(self.tx_hash)}")
        return self.with_transaction(tx)

    # ---- serialisation ----

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction": self.transaction.to_dict(),
            "omnilock_config": self.auth_scheme.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TransactionEnvelope:
        try:
            tx = Transaction.from_dict(d["transaction"])
            scheme = AuthScheme.from_dict(d["omnilock_config"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"invalid envelope: {exc}") from exc
        envelope = cls(tx, scheme)
        envelope.validate()
        return envelope

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> TransactionEnvelope:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"envelope is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> TransactionEnvelope:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def save(self, path: str | Path) -> None:
        """Write atomically: the old file stays intact if anything fails."""
        write_atomic(path, self.to_json())

    def export_ckb_cli(self) -> dict[str, Any]:
        """ckb-cli compatible tx-info document."""
        return {
            "transaction": self.transaction.to_dict(),
            "multisig_configs": {},
            "signatures": {},
        }


def write_atomic(path: str | Path, text: str) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise

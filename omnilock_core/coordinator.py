"""
Signing coordinator: applies a round of signatures to an envelope.

A round:
  1. refuses a scheme that differs from the envelope's, and
     open-transaction mode, whose sighash is not computed here,
  2. checks every key against the scheme before anything is signed,
  3. resolves input cells and groups inputs by lock script,
  4. signs each OmniLock group with the matching keys, writing each
     signature into its fixed slot of the group's witness lock,
  5. returns a new envelope plus the groups that stay locked.

The input envelope is never modified, so a failed round leaves the caller's
state untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from omnilock_core import molecule
from omnilock_core.auth_scheme import AuthScheme
from omnilock_core.crypto_utils import new_blake2b
from omnilock_core.envelope import LOCK_WITNESS_INDEX, TransactionEnvelope
from omnilock_core.errors import ConfigError, InconsistentState, MalformedWitness, UnlockError
from omnilock_core.keys import PrivateKey
from omnilock_core.progress import MultisigProgressTracker
from omnilock_core.transaction import CellOutput, OutPoint, Script, Transaction, bytes_to_hex
from omnilock_core.witness_lock import WitnessLock, WitnessLockCodec

logger = logging.getLogger("omnilock_coordinator")


# ===================================================================
#  Input cell resolution
# ===================================================================

class CellResolver:
    """Looks up the cell an input spends."""

    def get_cell(self, out_point: OutPoint) -> CellOutput:
        raise NotImplementedError


class StaticCellResolver(CellResolver):
    """Resolver backed by a pre-fetched ``OutPoint -> CellOutput`` map."""

    def __init__(self, cells: dict[OutPoint, CellOutput] | None = None):
        self.cells: dict[OutPoint, CellOutput] = dict(cells or {})

    def add(self, out_point: OutPoint, cell: CellOutput) -> None:
        self.cells[out_point] = cell

    def get_cell(self, out_point: OutPoint) -> CellOutput:
        cell = self.cells.get(out_point)
        if cell is None:
            raise UnlockError(f"input cell {out_point} is unknown")
        return cell


@dataclass
class ScriptGroup:
    """Inputs sharing one lock script."""
    script: Script
    input_indices: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"script": self.script.to_dict(), "input_indices": list(self.input_indices)}


def group_inputs(tx: Transaction, resolver: CellResolver) -> list[ScriptGroup]:
    """Group input indices by the lock script of the cells they spend."""
    groups: dict[bytes, ScriptGroup] = {}
    for idx, cell_input in enumerate(tx.inputs):
        cell = resolver.get_cell(cell_input.previous_output)
        key = cell.lock.script_hash()
        groups.setdefault(key, ScriptGroup(cell.lock)).input_indices.append(idx)
    return list(groups.values())


def signing_digest(tx: Transaction, group: ScriptGroup) -> bytes:
    """
    Sighash-all digest of ``group``.

    blake2b over the transaction hash, then each group witness and each
    witness past the last input, every witness preceded by its u64 length.
    The first group witness must already carry the placeholder lock, and
    every group input needs a witness (see ``Transaction.pad_witnesses``).
    """
    indices = list(group.input_indices)
    if indices and indices[-1] >= len(tx.witnesses):
        raise MalformedWitness(f"transaction has no witness at index {indices[-1]}")
    indices += list(range(len(tx.inputs), len(tx.witnesses)))
    h = new_blake2b()
    h.update(tx.hash())
    for i in indices:
        witness = tx.witnesses[i]
        h.update(molecule.pack_u64(len(witness)))
        h.update(witness)
    return h.digest()


# ===================================================================
#  Coordinator
# ===================================================================

class SigningCoordinator:
    """Applies signatures for one AuthScheme to a transaction envelope."""

    def __init__(self, cell_resolver: CellResolver, omnilock_type_hash: bytes):
        self.cell_resolver = cell_resolver
        self.omnilock_type_hash = bytes(omnilock_type_hash)
        self.tracker = MultisigProgressTracker()

    def lock_script(self, scheme: AuthScheme) -> Script:
        return Script(self.omnilock_type_hash, "type", scheme.build_args())

    def sign_round(
        self,
        envelope: TransactionEnvelope,
        scheme: AuthScheme,
        keys: Sequence[PrivateKey],
    ) -> tuple[TransactionEnvelope, list[ScriptGroup]]:
        if envelope.auth_scheme != scheme:
            raise InconsistentState(
                "signing scheme differs from the scheme the envelope was built for"
            )
        if scheme.is_opentx_mode:
            raise ConfigError("signing in open-transaction mode is not supported")
        for key in keys:
            scheme.require_identity(key.public_key())

        tx = envelope.transaction.copy()
        tx.pad_witnesses()
        target = self.lock_script(scheme)
        codec = WitnessLockCodec(scheme)
        still_locked: list[ScriptGroup] = []
        matched_any_group = False

        for group in group_inputs(tx, self.cell_resolver):
            if group.script != target:
                logger.debug(f"Group {bytes_to_hex(group.script.script_hash())} has no unlocker")
                still_locked.append(group)
                continue
            if group.input_indices[0] != LOCK_WITNESS_INDEX:
                raise InconsistentState(
                    f"OmniLock inputs start at input {group.input_indices[0]}; "
                    f"the first input must be an OmniLock cell"
                )
            matched_any_group = True
            if not self._sign_group(tx, group, scheme, codec, keys):
                still_locked.append(group)

        if not matched_any_group:
            logger.warning("No input is locked by the OmniLock script of this scheme")
        logger.info(f"Signing round done: {len(still_locked)} group(s) still locked")
        return envelope.with_transaction(tx), still_locked

    def _sign_group(
        self,
        tx: Transaction,
        group: ScriptGroup,
        scheme: AuthScheme,
        codec: WitnessLockCodec,
        keys: Sequence[PrivateKey],
    ) -> bool:
        """Sign ``group`` in ``tx``; returns False when no key matched."""
        idx = group.input_indices[0]
        current = tx.witness_lock(idx)
        lock = codec.decode(current)

        tx.set_witness_lock(idx, codec.placeholder())
        digest = signing_digest(tx, group)
        message = scheme.signing_message(digest)

        by_slot = sorted(
            ((scheme.slot_of(key.public_key()), key) for key in keys),
            key=lambda pair: pair[0],
        )
        for slot, key in by_slot:
            if slot not in lock.filled_slots() and not self._slot_open(lock, scheme, slot):
                logger.warning(
                    f"Not filling slot {slot} ({bytes_to_hex(scheme.slot_hash(slot))}): "
                    f"threshold met or the rest is reserved for the first "
                    f"{scheme.require_first_n} signer(s)"
                )
                continue
            signature = key.sign(message)
            if lock.slots[slot] == signature:
                logger.warning(f"Slot {slot} was already signed with this key")
            lock = codec.with_signature(lock, slot, signature)
            logger.info(f"Filled slot {slot} of input group at witness {idx}")

        matched = bool(by_slot)
        final = codec.encode(lock) if matched else current
        tx.set_witness_lock(idx, final)

        if scheme.is_multisig and not codec.decode(final).is_placeholder():
            progress = self.tracker.assess(final, scheme, digest)
            if progress.is_complete and not matched:
                raise InconsistentState(
                    "witness lock is fully signed but its script group is still locked"
                )
        return matched

    @staticmethod
    def _slot_open(lock: WitnessLock, scheme: AuthScheme, slot: int) -> bool:
        """
        Whether ``slot`` may still be filled without passing the threshold.

        Slots outside the first ``require_first_n`` share the
        ``threshold - require_first_n`` positions left over, so the lock can
        never be filled past the threshold or into a state the mandatory
        signers can no longer complete.
        """
        filled = lock.filled_slots()
        if len(filled) >= scheme.threshold:
            return False
        if slot < scheme.require_first_n:
            return True
        others = sum(1 for i in filled if i >= scheme.require_first_n)
        return others < scheme.threshold - scheme.require_first_n

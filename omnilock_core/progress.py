"""
Multisig progress tracking.

Classifies a (possibly partially filled) witness lock purely from its byte
layout: no session state is kept anywhere else.

    Placeholder (all slots empty) -> Partial -> Complete

Slots are only ever filled, never cleared.  ``Progress.empty_slots`` is the
number of all-zero slots left in the lock; ``Progress.missing`` is how many
more distinct signers are needed to reach the threshold (taking
require-first-n into account).  Single-key schemes are assessed as 1-of-1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from omnilock_core.auth_scheme import AuthScheme
from omnilock_core.crypto_utils import recover_public_key
from omnilock_core.errors import InconsistentState
from omnilock_core.transaction import bytes_to_hex
from omnilock_core.witness_lock import WitnessLock, WitnessLockCodec

logger = logging.getLogger("omnilock_progress")


class ProgressState(Enum):
    COMPLETE = "complete"
    NEED_MORE = "need_more"
    OVERFILLED = "overfilled"


@dataclass(frozen=True)
class Progress:
    state: ProgressState
    empty_slots: int
    missing: int
    filled: tuple[int, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.state is ProgressState.COMPLETE

    def describe(self) -> str:
        if self.state is ProgressState.COMPLETE:
            return "> transaction signed!"
        if self.state is ProgressState.NEED_MORE:
            return (
                f"> {self.missing} more signature(s) needed! "
                f"({self.empty_slots} empty slot(s) left)"
            )
        return f"> too many signatures: slots {list(self.filled)} are all filled"


class MultisigProgressTracker:
    """Inspects witness-lock slots and reports how far signing has come."""

    def verify_slots(self, lock: WitnessLock, scheme: AuthScheme, digest: bytes) -> None:
        """
        Check that every filled slot recovers to the identity declared for
        that slot.  Raises ``InconsistentState`` on the first bad slot.
        """
        message = scheme.signing_message(digest)
        for slot in lock.filled_slots():
            try:
                pubkey = recover_public_key(message, lock.slots[slot])
            except ValueError as exc:
                raise InconsistentState(f"slot {slot} holds an invalid signature: {exc}") from exc
            if scheme.identity_hash(pubkey) != scheme.slot_hash(slot):
                raise InconsistentState(
                    f"slot {slot} is signed by {bytes_to_hex(scheme.identity_hash(pubkey))}, "
                    f"expected {bytes_to_hex(scheme.slot_hash(slot))}"
                )

    def assess(
        self, lock_field: bytes, scheme: AuthScheme, digest: bytes | None = None,
    ) -> Progress:
        """
        Classify ``lock_field`` against ``scheme``.

        When ``digest`` (the group's signing digest) is given, filled slots
        are also verified cryptographically.
        """
        lock = WitnessLockCodec(scheme).decode(lock_field)
        if digest is not None:
            self.verify_slots(lock, scheme, digest)

        filled = tuple(lock.filled_slots())
        empty = len(lock.slots) - len(filled)
        first_n_missing = sum(
            1 for i in range(scheme.require_first_n) if i not in filled
        )
        missing = max(scheme.threshold - len(filled), first_n_missing, 0)

        if len(filled) > scheme.threshold:
            state = ProgressState.OVERFILLED
        elif empty == 0 or missing == 0:
            state = ProgressState.COMPLETE
        else:
            state = ProgressState.NEED_MORE
        logger.debug(
            f"assess: {len(filled)}/{len(lock.slots)} slots filled, "
            f"threshold={scheme.threshold} -> {state.value}"
        )
        return Progress(state, empty, missing, filled)


def assess(lock_field: bytes, scheme: AuthScheme, digest: bytes | None = None) -> Progress:
    return MultisigProgressTracker().assess(lock_field, scheme, digest)

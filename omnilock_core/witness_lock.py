"""
Witness-lock codec.

The lock field carried in ``WitnessArgs.lock`` of an OmniLock input group:

    single key : [header][65-byte signature]
    multisig   : [header][0x00 | r | m | N | N x hash160][N x 65-byte slots]

``header`` is empty unless the scheme is in open-transaction mode.  A
placeholder ("zero lock") is all zero bytes of the same length, so size and
fee estimation are exact before anything is signed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from omnilock_core.auth_scheme import AuthScheme
from omnilock_core.crypto_utils import SIGNATURE_SIZE
from omnilock_core.errors import MalformedWitness

EMPTY_SLOT = bytes(SIGNATURE_SIZE)


@dataclass
class WitnessLock:
    header: bytes = b""
    config: bytes = b""
    slots: list[bytes] = field(default_factory=list)

    def is_placeholder(self) -> bool:
        return not any(self.header) and not any(self.config) and self.filled_count() == 0

    def filled_slots(self) -> list[int]:
        return [i for i, s in enumerate(self.slots) if s != EMPTY_SLOT]

    def filled_count(self) -> int:
        return len(self.filled_slots())

    def empty_count(self) -> int:
        return len(self.slots) - self.filled_count()


class WitnessLockCodec:
    """Encode / decode lock fields for one scheme."""

    def __init__(self, scheme: AuthScheme):
        self.scheme = scheme
        self.header_len = len(scheme.header())
        self.config_len = len(scheme.config_bytes())
        self.slot_count = scheme.slot_count

    @property
    def lock_len(self) -> int:
        return self.header_len + self.config_len + SIGNATURE_SIZE * self.slot_count

    @property
    def signature_offset(self) -> int:
        return self.header_len + self.config_len

    def placeholder(self) -> bytes:
        return bytes(self.lock_len)

    def empty_lock(self) -> WitnessLock:
        return WitnessLock(
            header=bytes(self.header_len),
            config=bytes(self.config_len),
            slots=[EMPTY_SLOT] * self.slot_count,
        )

    def decode(self, data: bytes) -> WitnessLock:
        data = bytes(data)
        if len(data) != self.lock_len:
            raise MalformedWitness(
                f"witness lock is {len(data)} bytes, "
                f"expected {self.lock_len} for this scheme"
            )
        header = data[:self.header_len]
        config = data[self.header_len:self.signature_offset]
        if any(config) and config != self.scheme.config_bytes():
            raise MalformedWitness("multisig config in witness does not match the scheme")
        if any(header) and header != self.scheme.header():
            raise MalformedWitness("open-tx header in witness does not match the scheme")
        sig_area = data[self.signature_offset:]
        slots = [
            sig_area[i:i + SIGNATURE_SIZE]
            for i in range(0, len(sig_area), SIGNATURE_SIZE)
        ]
        return WitnessLock(header=header, config=config, slots=slots)

    def encode(self, lock: WitnessLock) -> bytes:
        if len(lock.header) != self.header_len or len(lock.config) != self.config_len:
            raise MalformedWitness("witness lock header does not match the scheme")
        if len(lock.slots) != self.slot_count:
            raise MalformedWitness(
                f"witness lock has {len(lock.slots)} slots, expected {self.slot_count}"
            )
        for slot in lock.slots:
            if len(slot) != SIGNATURE_SIZE:
                raise MalformedWitness(f"signature slot must be {SIGNATURE_SIZE} bytes")
        return bytes(lock.header) + bytes(lock.config) + b"".join(bytes(s) for s in lock.slots)

    def with_signature(self, lock: WitnessLock, slot: int, signature: bytes) -> WitnessLock:
        """Copy of ``lock`` with ``slot`` filled and the scheme header written."""
        if len(signature) != SIGNATURE_SIZE:
            raise ValueError(f"signature must be {SIGNATURE_SIZE} bytes")
        slots = list(lock.slots)
        slots[slot] = bytes(signature)
        return WitnessLock(
            header=self.scheme.header(),
            config=self.scheme.config_bytes(),
            slots=slots,
        )


def placeholder(scheme: AuthScheme) -> bytes:
    """All-zero lock field sized for ``scheme``."""
    return WitnessLockCodec(scheme).placeholder()

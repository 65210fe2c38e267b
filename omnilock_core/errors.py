"""
Error taxonomy for the OmniLock signer.

Every error aborts the current operation and is surfaced to the caller
unchanged.  A multisig envelope that still needs signatures is *not* an
error; see ``omnilock_core.progress``.
"""

from __future__ import annotations


class OmniLockError(Exception):
    """Base class for all signer errors."""


class MalformedWitness(OmniLockError):
    """Witness bytes do not match the layout prescribed by the scheme."""


class IdentityMismatch(OmniLockError):
    """A supplied key is not one of the scheme's authorized identities."""


class UnlockError(OmniLockError):
    """Input cell data needed for the signing digest could not be resolved."""


class InconsistentState(OmniLockError):
    """Witness fill state and script-group lock state disagree."""


class ConfigError(OmniLockError):
    """Scheme construction or configuration invariants violated."""


class StaleEnvelope(OmniLockError):
    """A stored envelope changed since it was read (lost compare-and-swap)."""


class RpcError(OmniLockError):
    """The chain node returned an error or could not be reached."""

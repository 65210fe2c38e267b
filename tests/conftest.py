"""
Shared pytest fixtures for the OmniLock signer test suite.
"""

import pytest

from builders import build_envelope, pubkey_hash
from omnilock_core.auth_scheme import PubkeyHash, new_multisig
from omnilock_core.storage import EnvelopeStore


@pytest.fixture
def multisig_scheme():
    """2-of-3 multisig over deterministic keys 1, 2 and 3."""
    return new_multisig([pubkey_hash(i) for i in (1, 2, 3)], 0, 2)


@pytest.fixture
def pubkey_scheme():
    """Single-key scheme for key 1."""
    return PubkeyHash(pubkey_hash(1))


@pytest.fixture
def multisig_envelope(multisig_scheme):
    envelope, _ = build_envelope(multisig_scheme)
    return envelope


@pytest.fixture
def coordinator(multisig_scheme):
    _, coord = build_envelope(multisig_scheme)
    return coord


@pytest.fixture
def store():
    """In-memory envelope store."""
    s = EnvelopeStore(":memory:")
    yield s
    s.close()


@pytest.fixture(autouse=True)
def _clean_omnilock_env(monkeypatch):
    """Config environment overrides must not leak in from the shell."""
    for name in (
        "OMNILOCK_TX_HASH", "OMNILOCK_INDEX", "OMNILOCK_TYPE_HASH",
        "OMNILOCK_CKB_RPC", "OMNILOCK_CKB_INDEXER", "OMNILOCK_KEYSTORE_DIR",
        "OMNILOCK_LOG_LEVEL", "OMNILOCK_LOG_FMT",
    ):
        monkeypatch.delenv(name, raising=False)

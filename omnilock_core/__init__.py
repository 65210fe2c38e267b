"""
OmniLock signer - builds and signs CKB transactions locked by OmniLock.

Key features:
- PubkeyHash, Ethereum and M-of-N Multisig authorization schemes
- Byte-exact OmniLock witness-lock layout with zero-filled placeholders
- Multi-round multisig signing persisted in a JSON transaction envelope
- Progress tracking derived purely from witness bytes
- Passphrase-protected keystore and raw-key signing backends
"""

__version__ = "0.1.0"
__all__ = [
    "auth_scheme",
    "cli",
    "config",
    "coordinator",
    "crypto_utils",
    "envelope",
    "errors",
    "keys",
    "logging_config",
    "molecule",
    "progress",
    "rpc",
    "storage",
    "transaction",
    "witness_lock",
]

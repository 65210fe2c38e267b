"""
TOML-based configuration for the OmniLock signer.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from omnilock_core.config import load_config
    cfg = load_config("~/.omnilock.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]

from omnilock_core.errors import ConfigError
from omnilock_core.transaction import hex_to_bytes

DEFAULT_CONFIG_PATH = "~/.omnilock.toml"

TEMPLATE_CONFIG = """\
# OmniLock signer configuration

[omnilock]
# Transaction hash and output index of the OmniLock script deployment
tx_hash = "0x0000000000000000000000000000000000000000000000000000000000000000"
index = 0
# Optional: type-script hash of the deployed script (skips the RPC lookup)
type_hash = ""

[rpc]
ckb_rpc = "http://127.0.0.1:8114"
ckb_indexer = "http://127.0.0.1:8116"
timeout = 30

[keystore]
dir = "~/.ckb-cli/keystore"

[logging]
level = "INFO"
format = "human"   # "human" or "json"
"""


@dataclass
class OmniLockDeployConfig:
    """Where the OmniLock script is deployed."""
    tx_hash: str = ""
    index: int = 0
    type_hash: str = ""


@dataclass
class RPCConfig:
    """Chain node endpoints (used only by the chain client)."""
    ckb_rpc: str = "http://127.0.0.1:8114"
    ckb_indexer: str = "http://127.0.0.1:8116"
    timeout: float = 30.0


@dataclass
class KeystoreConfig:
    dir: str = "~/.ckb-cli/keystore"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class SignerConfig:
    """Top-level configuration container."""
    omnilock: OmniLockDeployConfig = field(default_factory=OmniLockDeployConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)
    keystore: KeystoreConfig = field(default_factory=KeystoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def check(self) -> None:
        """Validate the fields the signer cannot work without."""
        try:
            tx_hash = hex_to_bytes(self.omnilock.tx_hash)
        except ValueError as exc:
            raise ConfigError(f"Fail to parse omnilock tx_hash: {exc}") from exc
        if len(tx_hash) != 32:
            raise ConfigError("omnilock tx_hash must be a 32-byte hex string")
        if int(self.omnilock.index) < 0:
            raise ConfigError("omnilock index must not be negative")
        if self.omnilock.type_hash:
            try:
                type_hash = hex_to_bytes(self.omnilock.type_hash)
            except ValueError as exc:
                raise ConfigError(f"Fail to parse omnilock type_hash: {exc}") from exc
            if len(type_hash) != 32:
                raise ConfigError("omnilock type_hash must be a 32-byte hex string")
        if not self.rpc.ckb_rpc.startswith(("http://", "https://")):
            raise ConfigError(f"ckb_rpc must be an http(s) URL, got {self.rpc.ckb_rpc!r}")

    @property
    def omnilock_tx_hash(self) -> bytes:
        return hex_to_bytes(self.omnilock.tx_hash)

    @property
    def keystore_dir(self) -> Path:
        return expand_home_dir(self.keystore.dir)


def expand_home_dir(path: str) -> Path:
    return Path(path).expanduser()


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None, required: bool = False) -> SignerConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        OMNILOCK_TX_HASH       -> omnilock.tx_hash
        OMNILOCK_INDEX         -> omnilock.index
        OMNILOCK_TYPE_HASH     -> omnilock.type_hash
        OMNILOCK_CKB_RPC       -> rpc.ckb_rpc
        OMNILOCK_CKB_INDEXER   -> rpc.ckb_indexer
        OMNILOCK_KEYSTORE_DIR  -> keystore.dir
        OMNILOCK_LOG_LEVEL     -> logging.level
        OMNILOCK_LOG_FMT       -> logging.format
    """
    cfg = SignerConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = expand_home_dir(path)
        if p.exists():
            if not p.is_file():
                raise ConfigError(f"{path} is not a file!")
            try:
                with open(p, "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"{path} is not a valid toml file: {exc}") from exc
            for section_name, section_dc in [
                ("omnilock", cfg.omnilock),
                ("rpc", cfg.rpc),
                ("keystore", cfg.keystore),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
        elif required:
            raise ConfigError(f"{path} not exist!")

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("OMNILOCK_TX_HASH"):
        cfg.omnilock.tx_hash = v
    if v := os.environ.get("OMNILOCK_INDEX"):
        cfg.omnilock.index = int(v)
    if v := os.environ.get("OMNILOCK_TYPE_HASH"):
        cfg.omnilock.type_hash = v
    if v := os.environ.get("OMNILOCK_CKB_RPC"):
        cfg.rpc.ckb_rpc = v
    if v := os.environ.get("OMNILOCK_CKB_INDEXER"):
        cfg.rpc.ckb_indexer = v
    if v := os.environ.get("OMNILOCK_KEYSTORE_DIR"):
        cfg.keystore.dir = v
    if v := os.environ.get("OMNILOCK_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("OMNILOCK_LOG_FMT"):
        cfg.logging.format = v

    return cfg


def write_template(path: str) -> Path:
    """Write the template config; refuses to overwrite an existing file."""
    p = expand_home_dir(path)
    if p.exists():
        raise ConfigError(f"The file or directory {p} already exist!")
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(TEMPLATE_CONFIG, encoding="utf-8")
    return p

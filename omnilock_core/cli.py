"""
``omnilock`` command line.

Usage:
    omnilock config init
    omnilock init-tx multisig --sighash-address 0x.. 0x.. 0x.. \\
        --threshold 2 --require-first-n 0 --tx-file tx.json
    omnilock add-input --tx-hash 0x.. --index 0 --tx-file tx.json
    omnilock sign multisig --sender-key 0x.. --tx-file tx.json
    omnilock status --tx-file tx.json
    omnilock send --tx-file tx.json

Every command that changes an envelope file rewrites it only on success;
on failure an error is printed and the previous file is left untouched.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import secrets
import sys
from decimal import Decimal, InvalidOperation
from typing import Sequence

from omnilock_core.auth_scheme import (
    AuthScheme,
    Ethereum,
    Multisig,
    OpentxInput,
    PubkeyHash,
    new_multisig,
)
from omnilock_core.config import (
    DEFAULT_CONFIG_PATH,
    SignerConfig,
    load_config,
    write_template,
)
from omnilock_core.coordinator import SigningCoordinator
from omnilock_core.envelope import TransactionEnvelope, write_atomic
from omnilock_core.errors import ConfigError, InconsistentState, OmniLockError
from omnilock_core.keys import KeyProvider, KeystoreKeyProvider, RawKeyProvider
from omnilock_core.logging_config import setup_logging
from omnilock_core.progress import ProgressState
from omnilock_core.rpc import CkbRpcClient, RpcCellResolver, fetch_omnilock_info, run_sync
from omnilock_core.transaction import (
    CellInput,
    CellOutput,
    OutPoint,
    Script,
    Transaction,
    bytes_to_hex,
    hex_to_bytes,
)
from omnilock_core.witness_lock import placeholder

logger = logging.getLogger("omnilock_cli")

SHANNONS_PER_CKB = 100_000_000


# ===================================================================
#  Helpers
# ===================================================================

def parse_hash(value: str, size: int) -> bytes:
    try:
        data = hex_to_bytes(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not hex") from exc
    if len(data) != size:
        raise argparse.ArgumentTypeError(f"{value!r} must be {size} bytes")
    return data


def parse_h160(value: str) -> bytes:
    return parse_hash(value, 20)


def parse_h256(value: str) -> bytes:
    return parse_hash(value, 32)


def parse_capacity(value: str) -> int:
    """CKB amount such as ``102.43`` -> shannons."""
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid capacity {value!r}") from exc
    shannons = amount * SHANNONS_PER_CKB
    if amount < 0 or shannons != shannons.to_integral_value():
        raise argparse.ArgumentTypeError(f"invalid capacity {value!r}")
    return int(shannons)


def omnilock_type_hash(cfg: SignerConfig, client: CkbRpcClient) -> bytes:
    if cfg.omnilock.type_hash:
        return hex_to_bytes(cfg.omnilock.type_hash)
    info = run_sync(fetch_omnilock_info(client, cfg.omnilock_tx_hash, int(cfg.omnilock.index)))
    return info.type_hash


def make_coordinator(cfg: SignerConfig) -> SigningCoordinator:
    cfg.check()
    client = CkbRpcClient(cfg.rpc.ckb_rpc, cfg.rpc.timeout)
    return SigningCoordinator(RpcCellResolver(client), omnilock_type_hash(cfg, client))


def scheme_from_args(args: argparse.Namespace) -> AuthScheme:
    opentx_input = None
    if args.opentx:
        salt = args.open_salt if args.open_salt is not None else secrets.randbits(32)
        opentx_input = OpentxInput(0, 0, (), salt)
        logger.warning("Open-transaction envelopes keep the signed-range header only and cannot be signed yet")
    if args.kind == "pubkey-hash":
        return PubkeyHash(args.pubkey_hash, opentx_input)
    if args.kind == "ethereum":
        return Ethereum(args.sender_address, opentx_input)
    return new_multisig(args.sighash_address, args.require_first_n, args.threshold, opentx_input)


def _require_unsigned(envelope: TransactionEnvelope) -> None:
    if envelope.has_signatures():
        raise InconsistentState(
            "envelope already carries signatures; changing the transaction would invalidate them"
        )


# ===================================================================
#  Commands
# ===================================================================

def cmd_config(args: argparse.Namespace, cfg: SignerConfig) -> int:
    if args.action == "init":
        path = write_template(args.config)
        print(f"> config template written to {path}")
        return 0
    cfg = load_config(args.config, required=True)
    cfg.check()
    print(f"> config ok: omnilock {cfg.omnilock.tx_hash}:{cfg.omnilock.index}, rpc {cfg.rpc.ckb_rpc}")
    return 0


def cmd_init_tx(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.create(Transaction(), scheme_from_args(args))
    envelope.save(args.tx_file)
    print(f"> envelope written to {args.tx_file}")
    return 0


def cmd_add_input(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.tx_file)
    _require_unsigned(envelope)
    out_point = OutPoint(args.tx_hash, args.index)
    client = CkbRpcClient(cfg.rpc.ckb_rpc, cfg.rpc.timeout)
    status = run_sync(client.get_live_cell(out_point, False))
    if not status or status.get("status") != "live":
        raise ConfigError(f"cell {out_point} is not live")
    tx = envelope.transaction.copy()
    tx.inputs.append(CellInput(out_point, args.since))
    tx.pad_witnesses()
    envelope.with_transaction(tx).save(args.tx_file)
    print(f"> input {out_point} added")
    return 0


def cmd_add_output(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.tx_file)
    _require_unsigned(envelope)
    tx = envelope.transaction.copy()
    lock = Script(args.code_hash, args.hash_type, hex_to_bytes(args.args))
    tx.outputs.append(CellOutput(args.capacity, lock))
    tx.outputs_data.append(b"")
    envelope.with_transaction(tx).save(args.tx_file)
    print(f"> output of {args.capacity} shannons added")
    return 0


def cmd_build_address(args: argparse.Namespace, cfg: SignerConfig) -> int:
    args.opentx = False
    scheme = scheme_from_args(args)
    cfg.check()
    client = CkbRpcClient(cfg.rpc.ckb_rpc, cfg.rpc.timeout)
    lock_script = Script(omnilock_type_hash(cfg, client), "type", scheme.build_args())
    print(json.dumps({
        "lock-arg": bytes_to_hex(lock_script.args),
        "lock-hash": bytes_to_hex(lock_script.script_hash()),
        "code-hash": bytes_to_hex(lock_script.code_hash),
        "hash-type": lock_script.hash_type,
    }, indent=2))
    return 0


_SCHEME_CLASSES = {"pubkey-hash": PubkeyHash, "ethereum": Ethereum, "multisig": Multisig}


def _key_provider(args: argparse.Namespace, cfg: SignerConfig) -> KeyProvider:
    if args.sender_key:
        return RawKeyProvider(args.sender_key)
    if getattr(args, "from_account", None) is not None:
        password = getpass.getpass("Password: ")
        return KeystoreKeyProvider(cfg.keystore_dir, args.from_account, password)
    raise ConfigError("must provide one of sender_key(private key) or an account!")


def cmd_sign(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.tx_file)
    scheme = envelope.auth_scheme
    if not isinstance(scheme, _SCHEME_CLASSES[args.kind]):
        raise ConfigError(f"envelope is not locked by a {args.kind} scheme")
    provider = _key_provider(args, cfg)
    coordinator = make_coordinator(cfg)

    previous = envelope.lock_field
    with provider.unlock() as keys:
        signed, still_locked = coordinator.sign_round(envelope, scheme, keys)
    lock_field = signed.lock_field
    if lock_field == placeholder(scheme):
        raise OmniLockError("Failed to sign the transaction!")

    if not scheme.is_multisig:
        if still_locked:
            raise OmniLockError("Failed to sign the transaction!")
        print("> transaction signed!")
    elif still_locked:
        print(f"> {len(still_locked)} groups left to sign!")
    else:
        progress = signed.progress()
        if progress.state is ProgressState.OVERFILLED:
            raise InconsistentState(
                f"{scheme.threshold} signatures needed, but {len(progress.filled)} slots are filled"
            )
        if lock_field == previous:
            logger.warning("Nothing changed: the key(s) had already signed this transaction")
        print(progress.describe())
    signed.save(args.tx_file)
    return 0


def cmd_status(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.tx_file)
    progress = envelope.progress()
    scheme = envelope.auth_scheme
    print(f"tx hash : {bytes_to_hex(envelope.tx_hash)}")
    print(f"scheme  : {scheme.to_dict()['id']['flag']} (threshold {scheme.threshold} "
          f"of {scheme.slot_count})")
    print(f"filled  : {list(progress.filled)}")
    print(progress.describe())
    return 0


def cmd_merge(args: argparse.Namespace, cfg: SignerConfig) -> int:
    mine = TransactionEnvelope.load(args.tx_file)
    theirs = TransactionEnvelope.load(args.other)
    merged = mine.merge(theirs)
    merged.save(args.out or args.tx_file)
    print(merged.progress().describe())
    return 0


def cmd_export_tx(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.from_tx_file)
    write_atomic(args.to_tx_file, json.dumps(envelope.export_ckb_cli(), indent=2))
    print(f"> exported to {args.to_tx_file}")
    return 0


def cmd_send(args: argparse.Namespace, cfg: SignerConfig) -> int:
    envelope = TransactionEnvelope.load(args.tx_file)
    if not args.force and not envelope.progress().is_complete:
        raise OmniLockError("transaction is not fully signed (use --force to send anyway)")
    cfg.check()
    client = CkbRpcClient(cfg.rpc.ckb_rpc, cfg.rpc.timeout)
    tx_hash = run_sync(client.send_transaction(envelope.transaction))
    print(f">>> tx {bytes_to_hex(tx_hash)} sent! <<<")
    return 0


# ===================================================================
#  Parser
# ===================================================================

def _add_scheme_parsers(sub: argparse._SubParsersAction, with_tx_file: bool) -> None:
    kinds = {
        "pubkey-hash": "blake160 of a secp256k1 public key",
        "ethereum": "Ethereum address (keccak160 of the public key)",
        "multisig": "M-of-N multisig over sighash addresses",
    }
    for kind, help_text in kinds.items():
        p = sub.add_parser(kind, help=help_text)
        p.set_defaults(kind=kind)
        if kind == "pubkey-hash":
            p.add_argument("--pubkey-hash", type=parse_h160, required=True)
        elif kind == "ethereum":
            p.add_argument("--sender-address", type=parse_h160, required=True)
        else:
            p.add_argument("--sighash-address", type=parse_h160, nargs="+", required=True,
                           help="blake160 lock args, in signing-slot order")
            p.add_argument("--threshold", type=int, required=True)
            p.add_argument("--require-first-n", type=int, default=0)
        if with_tx_file:
            p.add_argument("--opentx", action="store_true", help="open-transaction mode")
            p.add_argument("--open-salt", type=int, default=None)
            p.add_argument("--tx-file", required=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnilock", description="OmniLock transaction signer")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH, help="config file path")
    parser.add_argument("--log-level", default=None, help="override the configured log level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("config", help="create or check the configuration file")
    p.add_argument("action", choices=["init", "check"])
    p.set_defaults(func=cmd_config)

    p = sub.add_parser("init-tx", help="start an unsigned envelope for a scheme")
    p.set_defaults(func=cmd_init_tx)
    _add_scheme_parsers(p.add_subparsers(dest="kind", required=True), with_tx_file=True)

    p = sub.add_parser("add-input", help="add a live cell as input")
    p.add_argument("--tx-hash", type=parse_h256, required=True)
    p.add_argument("--index", type=int, required=True)
    p.add_argument("--since", type=int, default=0)
    p.add_argument("--tx-file", required=True)
    p.set_defaults(func=cmd_add_input)

    p = sub.add_parser("add-output", help="add an output cell")
    p.add_argument("--code-hash", type=parse_h256, required=True)
    p.add_argument("--hash-type", choices=["data", "type", "data1", "data2"], default="type")
    p.add_argument("--args", default="0x")
    p.add_argument("--capacity", type=parse_capacity, required=True, help="CKB, e.g. 102.43")
    p.add_argument("--tx-file", required=True)
    p.set_defaults(func=cmd_add_output)

    p = sub.add_parser("build-address", help="print the lock script of a scheme")
    p.set_defaults(func=cmd_build_address)
    _add_scheme_parsers(p.add_subparsers(dest="kind", required=True), with_tx_file=False)

    p = sub.add_parser("sign", help="sign the transaction")
    p.set_defaults(func=cmd_sign)
    sign_sub = p.add_subparsers(dest="kind", required=True)
    s = sign_sub.add_parser("pubkey-hash")
    s.add_argument("--sender-key", nargs=1, default=None)
    s.add_argument("--from-account", type=parse_h160, default=None)
    s.add_argument("--tx-file", required=True)
    s = sign_sub.add_parser("ethereum")
    s.add_argument("--sender-key", nargs=1, required=True)
    s.add_argument("--tx-file", required=True)
    s = sign_sub.add_parser("multisig")
    s.add_argument("--sender-key", nargs="+", required=True)
    s.add_argument("--tx-file", required=True)

    p = sub.add_parser("status", help="show how far signing has come")
    p.add_argument("--tx-file", required=True)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("merge", help="merge the signatures of another copy of the envelope")
    p.add_argument("--tx-file", required=True)
    p.add_argument("--other", required=True)
    p.add_argument("--out", default=None)
    p.set_defaults(func=cmd_merge)

    p = sub.add_parser("export-tx", help="write a ckb-cli compatible tx file")
    p.add_argument("--from-tx-file", required=True)
    p.add_argument("--to-tx-file", required=True)
    p.set_defaults(func=cmd_export_tx)

    p = sub.add_parser("send", help="submit the transaction")
    p.add_argument("--tx-file", required=True)
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=cmd_send)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
        setup_logging(
            level=args.log_level or cfg.logging.level,
            fmt=cfg.logging.format,
            log_file=cfg.logging.file,
        )
        return args.func(args, cfg)
    except (OmniLockError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130


def run() -> None:
    sys.exit(main())

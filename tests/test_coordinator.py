"""
Test suite for omnilock_core.coordinator — signing rounds end to end.

Covers:
  - single-key and Ethereum signing (signature recovers to the signer)
  - 2-of-3 multisig across rounds, in any order
  - identity rejection leaves the envelope untouched
  - idempotent re-signing and slot monotonicity
  - threshold and require-first-n capping
  - malformed witnesses, unresolvable inputs, scheme drift
  - foreign script groups stay locked; OmniLock inputs must come first
  - witnesses padded to the input count before hashing
  - open-transaction envelopes refused
"""

import unittest

from builders import OMNILOCK_TYPE_HASH, build_envelope, build_tx, eth_address, key, pubkey_hash
from omnilock_core import molecule
from omnilock_core.auth_scheme import Ethereum, OpentxInput, PubkeyHash, new_multisig
from omnilock_core.coordinator import (
    SigningCoordinator,
    StaticCellResolver,
    group_inputs,
    signing_digest,
)
from omnilock_core.crypto_utils import ethereum_message_hash, new_blake2b, recover_public_key
from omnilock_core.envelope import TransactionEnvelope
from omnilock_core.errors import (
    ConfigError,
    IdentityMismatch,
    InconsistentState,
    MalformedWitness,
    UnlockError,
)
from omnilock_core.progress import ProgressState
from omnilock_core.witness_lock import EMPTY_SLOT, WitnessLockCodec, placeholder


def digest_of(envelope, coordinator):
    """Signing digest of the (single) OmniLock group of ``envelope``."""
    tx = envelope.transaction.copy()
    tx.set_witness_lock(0, placeholder(envelope.auth_scheme))
    target = coordinator.lock_script(envelope.auth_scheme)
    group = next(g for g in group_inputs(tx, coordinator.cell_resolver) if g.script == target)
    return signing_digest(tx, group)


def sighash_all(tx, scheme):
    """Digest as the lock script computes it: every witness of the group, in full."""
    h = new_blake2b()
    h.update(tx.hash())
    for i, witness in enumerate(tx.witnesses):
        if i == 0:
            witness = molecule.pack_witness_args(placeholder(scheme))
        h.update(molecule.pack_u64(len(witness)))
        h.update(witness)
    return h.digest()


class TestSingleKey(unittest.TestCase):

    def test_pubkey_hash_signature_recovers(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme)
        signed, still_locked = coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(still_locked, [])
        lock = signed.lock_field
        self.assertEqual(len(lock), 65)
        self.assertNotEqual(lock, bytes(65))
        digest = digest_of(signed, coord)
        self.assertEqual(recover_public_key(digest, lock), key(1).public_key())
        self.assertTrue(signed.progress().is_complete)

    def test_ethereum_signs_wrapped_digest(self):
        scheme = Ethereum(eth_address(1))
        envelope, coord = build_envelope(scheme)
        signed, _ = coord.sign_round(envelope, scheme, [key(1)])
        digest = digest_of(signed, coord)
        self.assertEqual(
            recover_public_key(ethereum_message_hash(digest), signed.lock_field),
            key(1).public_key(),
        )
        self.assertNotEqual(recover_public_key(digest, signed.lock_field), key(1).public_key())

    def test_input_envelope_untouched(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme)
        before = envelope.transaction.copy()
        coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(envelope.transaction, before)

    def test_wrong_key_rejected(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme)
        with self.assertRaises(IdentityMismatch):
            coord.sign_round(envelope, scheme, [key(2)])
        self.assertEqual(envelope.lock_field, bytes(65))

    def test_group_with_several_inputs(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme, inputs=3)
        signed, still_locked = coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(still_locked, [])
        self.assertEqual(signed.transaction.witnesses[1:], [b"", b""])
        self.assertEqual(
            recover_public_key(sighash_all(signed.transaction, scheme), signed.lock_field),
            key(1).public_key(),
        )

    def test_unpadded_envelope_padded_before_signing(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme, inputs=3)
        tx = envelope.transaction.copy()
        del tx.witnesses[1:]
        short = TransactionEnvelope(tx, scheme)
        signed, _ = coord.sign_round(short, scheme, [key(1)])
        self.assertEqual(len(signed.transaction.witnesses), 3)
        self.assertEqual(len(short.transaction.witnesses), 1)
        self.assertEqual(
            recover_public_key(sighash_all(signed.transaction, scheme), signed.lock_field),
            key(1).public_key(),
        )

    def test_digest_needs_group_witnesses(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme, inputs=2)
        tx = envelope.transaction.copy()
        del tx.witnesses[1:]
        group = group_inputs(tx, coord.cell_resolver)[0]
        with self.assertRaises(MalformedWitness):
            signing_digest(tx, group)

    def test_opentx_signing_refused(self):
        scheme = PubkeyHash(pubkey_hash(1), OpentxInput(0, 0, ((1, 0, 0),), 77))
        envelope, coord = build_envelope(scheme)
        with self.assertRaises(ConfigError):
            coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(envelope.lock_field, placeholder(scheme))


class TestTwoOfThree(unittest.TestCase):

    def setUp(self):
        self.scheme = new_multisig([pubkey_hash(i) for i in (1, 2, 3)], 0, 2)
        self.envelope, self.coord = build_envelope(self.scheme)
        self.codec = WitnessLockCodec(self.scheme)

    def sign(self, envelope, *indices):
        signed, _ = self.coord.sign_round(envelope, self.scheme, [key(i) for i in indices])
        return signed

    def test_first_round_need_more(self):
        signed = self.sign(self.envelope, 1)
        p = signed.progress()
        self.assertEqual(p.state, ProgressState.NEED_MORE)
        self.assertEqual(p.missing, 1)
        self.assertEqual(p.empty_slots, 2)
        self.assertEqual(p.filled, (0,))
        lock = signed.decode_lock()
        self.assertEqual(lock.config, self.scheme.config_bytes())

    def test_second_round_complete(self):
        signed = self.sign(self.sign(self.envelope, 1), 3)
        p = signed.progress()
        self.assertTrue(p.is_complete)
        self.assertEqual(p.filled, (0, 2))
        self.assertEqual(signed.decode_lock().slots[1], EMPTY_SLOT)

    def test_signatures_recover_to_slot_identity(self):
        signed = self.sign(self.sign(self.envelope, 1), 3)
        digest = digest_of(signed, self.coord)
        slots = signed.decode_lock().slots
        self.assertEqual(recover_public_key(digest, slots[0]), key(1).public_key())
        self.assertEqual(recover_public_key(digest, slots[2]), key(3).public_key())

    def test_order_independent(self):
        a = self.sign(self.sign(self.envelope, 1), 3)
        b = self.sign(self.sign(self.envelope, 3), 1)
        c = self.sign(self.envelope, 3, 1)
        self.assertEqual(a.lock_field, b.lock_field)
        self.assertEqual(a.lock_field, c.lock_field)

    def test_idempotent(self):
        once = self.sign(self.envelope, 2)
        twice = self.sign(once, 2)
        self.assertEqual(once.lock_field, twice.lock_field)

    def test_filled_slots_never_change(self):
        first = self.sign(self.envelope, 2)
        slot = first.decode_lock().slots[1]
        second = self.sign(first, 1)
        self.assertEqual(second.decode_lock().slots[1], slot)

    def test_unauthorized_key_changes_nothing(self):
        partial = self.sign(self.envelope, 1)
        with self.assertRaises(IdentityMismatch):
            self.coord.sign_round(partial, self.scheme, [key(2), key(4)])
        self.assertEqual(partial.progress().filled, (0,))

    def test_never_overfills(self):
        complete = self.sign(self.envelope, 1, 2)
        again = self.sign(complete, 3)
        self.assertEqual(again.lock_field, complete.lock_field)
        self.assertTrue(again.progress().is_complete)
        all_at_once = self.sign(self.envelope, 1, 2, 3)
        self.assertEqual(all_at_once.progress().filled, (0, 1))

    def test_scheme_drift(self):
        other = new_multisig([pubkey_hash(i) for i in (1, 2, 3)], 0, 3)
        with self.assertRaises(InconsistentState):
            self.coord.sign_round(self.envelope, other, [key(1)])

    def test_complete_lock_with_no_keys(self):
        done = self.sign(self.envelope, 1, 2)
        self.assertTrue(done.progress().is_complete)
        with self.assertRaises(InconsistentState):
            self.coord.sign_round(done, self.scheme, [])

    def test_malformed_lock(self):
        tx = self.envelope.transaction.copy()
        tx.set_witness_lock(0, bytes(100))
        broken = TransactionEnvelope(tx, self.scheme)
        with self.assertRaises(MalformedWitness):
            self.coord.sign_round(broken, self.scheme, [key(1)])

    def test_forged_slot_detected(self):
        codec = self.codec
        lock = codec.with_signature(codec.empty_lock(), 1, key(3).sign(bytes(range(32))))
        tx = self.envelope.transaction.copy()
        tx.set_witness_lock(0, codec.encode(lock))
        tampered = TransactionEnvelope(tx, self.scheme)
        with self.assertRaises(InconsistentState):
            self.sign(tampered, 1)


class TestRequireFirstN(unittest.TestCase):

    def setUp(self):
        self.scheme = new_multisig([pubkey_hash(i) for i in (1, 2, 3)], 1, 2)
        self.envelope, self.coord = build_envelope(self.scheme)

    def sign(self, envelope, *indices):
        signed, _ = self.coord.sign_round(envelope, self.scheme, [key(i) for i in indices])
        return signed

    def test_other_slots_keep_room_for_mandatory_signer(self):
        signed = self.sign(self.envelope, 2, 3)
        p = signed.progress()
        self.assertEqual(p.filled, (1,))
        self.assertEqual(p.missing, 1)
        done = self.sign(signed, 1)
        self.assertTrue(done.progress().is_complete)
        self.assertEqual(done.progress().filled, (0, 1))


class TestGroups(unittest.TestCase):

    def test_foreign_group_still_locked(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme, inputs=1, foreign_inputs=2)
        signed, still_locked = coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(len(still_locked), 1)
        self.assertEqual(still_locked[0].input_indices, [1, 2])
        self.assertTrue(signed.progress().is_complete)

    def test_no_matching_group(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, coord = build_envelope(scheme, inputs=0, foreign_inputs=1)
        signed, still_locked = coord.sign_round(envelope, scheme, [key(1)])
        self.assertEqual(len(still_locked), 1)
        self.assertEqual(signed.lock_field, bytes(65))

    def test_omnilock_input_must_come_first(self):
        scheme = PubkeyHash(pubkey_hash(1))
        tx, resolver = build_tx(scheme, inputs=1, foreign_inputs=1)
        tx.inputs.reverse()
        envelope = TransactionEnvelope.create(tx, scheme)
        coord = SigningCoordinator(resolver, OMNILOCK_TYPE_HASH)
        with self.assertRaises(InconsistentState):
            coord.sign_round(envelope, scheme, [key(1)])

    def test_unresolvable_input(self):
        scheme = PubkeyHash(pubkey_hash(1))
        envelope, _ = build_envelope(scheme)
        coord = SigningCoordinator(StaticCellResolver(), OMNILOCK_TYPE_HASH)
        with self.assertRaises(UnlockError):
            coord.sign_round(envelope, scheme, [key(1)])

    def test_lock_script(self):
        scheme = PubkeyHash(pubkey_hash(1))
        _, coord = build_envelope(scheme)
        script = coord.lock_script(scheme)
        self.assertEqual(script.code_hash, OMNILOCK_TYPE_HASH)
        self.assertEqual(script.hash_type, "type")
        self.assertEqual(script.args, scheme.build_args())

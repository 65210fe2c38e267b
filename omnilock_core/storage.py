"""
SQLite-based envelope store with optimistic concurrency.

Envelopes are keyed by their transaction hash, which signing rounds never
change.  Each row carries a version number; ``save`` is a compare-and-swap
on that version, so two signers working from the same snapshot cannot
silently overwrite each other's slots.

Usage:
    store = EnvelopeStore("data/envelopes.db")
    version = store.save(envelope)                  # first insert -> 1
    envelope, version = store.load(tx_hash)
    version = store.save(signed, expected_version=version)
    version = store.save_merged(other_signers_copy) # merge + retry on races
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

from omnilock_core.envelope import TransactionEnvelope
from omnilock_core.errors import StaleEnvelope
from omnilock_core.transaction import bytes_to_hex

logger = logging.getLogger("omnilock_storage")


class EnvelopeStore:
    """Thin SQLite wrapper for versioned envelopes."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/envelopes.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        # busy_timeout prevents "database is locked" under contention
        self._conn.execute("PRAGMA busy_timeout = 5000")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Envelope store opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS envelopes (
                tx_hash    TEXT PRIMARY KEY,
                version    INTEGER NOT NULL,
                body       TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Envelope store schema v{row['version']} is newer than this "
                f"software (v{self.CURRENT_SCHEMA_VERSION})"
            )

    # ── envelopes ────────────────────────────────────────────────

    def load(self, tx_hash: bytes) -> tuple[TransactionEnvelope, int]:
        row = self._conn.execute(
            "SELECT version, body FROM envelopes WHERE tx_hash = ?",
            (bytes_to_hex(tx_hash),),
        ).fetchone()
        if row is None:
            raise KeyError(f"no envelope stored for {bytes_to_hex(tx_hash)}")
        return TransactionEnvelope.from_json(row["body"]), row["version"]

    def version_of(self, tx_hash: bytes) -> int:
        """Current version, 0 when nothing is stored."""
        row = self._conn.execute(
            "SELECT version FROM envelopes WHERE tx_hash = ?",
            (bytes_to_hex(tx_hash),),
        ).fetchone()
        return row["version"] if row else 0

    def save(self, envelope: TransactionEnvelope, expected_version: int = 0) -> int:
        """
        Store ``envelope`` if the stored version still equals
        ``expected_version`` (0 = must not exist yet).  Returns the new
        version; raises ``StaleEnvelope`` when another writer got there first.
        """
        key = bytes_to_hex(envelope.tx_hash)
        body = envelope.to_json()
        now = time.time()
        with self._conn:
            if expected_version == 0:
                cur = self._conn.execute(
                    """INSERT OR IGNORE INTO envelopes (tx_hash, version, body, updated_at)
                       VALUES (?, 1, ?, ?)""",
                    (key, body, now),
                )
            else:
                cur = self._conn.execute(
                    """UPDATE envelopes SET version = version + 1, body = ?, updated_at = ?
                       WHERE tx_hash = ? AND version = ?""",
                    (body, now, key, expected_version),
                )
        if cur.rowcount != 1:
            raise StaleEnvelope(
                f"envelope {key} changed since version {expected_version} was read"
            )
        return expected_version + 1

    def save_merged(self, envelope: TransactionEnvelope, retries: int = 3) -> int:
        """Merge ``envelope`` into whatever is stored, retrying lost races."""
        for attempt in range(retries):
            version = self.version_of(envelope.tx_hash)
            merged = envelope
            if version:
                stored, version = self.load(envelope.tx_hash)
                merged = stored.merge(envelope)
            try:
                return self.save(merged, expected_version=version)
            except StaleEnvelope:
                logger.warning(f"Concurrent envelope update, retry {attempt + 1}/{retries}")
        raise StaleEnvelope(f"gave up merging after {retries} attempts")

    def delete(self, tx_hash: bytes) -> None:
        with self._conn:
            self._conn.execute(
                "DELETE FROM envelopes WHERE tx_hash = ?", (bytes_to_hex(tx_hash),)
            )

    def list_hashes(self) -> list[str]:
        rows = self._conn.execute("SELECT tx_hash FROM envelopes ORDER BY updated_at").fetchall()
        return [r["tx_hash"] for r in rows]

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

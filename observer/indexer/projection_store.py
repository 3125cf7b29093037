"""
Projection Store

SQLite storage for the materialized supply-chain view.

Collections:
- blocks: one row per projected block (idempotent upsert by height)
- participants: registered addresses
- items: manufactured items, immutable after creation
- inventory: volume per (holder, barcode), zero rows are kept
- transactions: append-only event ledger, unique per (height, log index)
- indexer_state: scalar cursor
- projection_faults: integrity problems that halted a block

All writes for one block go through a single transaction() so the block's
effects and the cursor advance commit together. The same lock guards
reads, so a reader never sees half of a block.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..errors import ConservationViolation


@dataclass
class BlockRecord:
    height: int
    hash: str
    timestamp: int
    processed: bool

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Participant:
    address: str
    name: str
    role_code: int
    role: str
    metadata: str
    first_seen_height: int
    last_updated_height: int

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Item:
    barcode: str
    name: str
    manufacturer_name: str
    manufactured_label: str
    creator: str
    minted_volume: int
    created_height: int
    created_tx_ref: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class InventoryEntry:
    holder: str
    barcode: str
    volume: int
    last_updated_height: int
    last_updated_tx_ref: Optional[str]

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TransactionRecord:
    event_kind: str
    barcode: str
    from_address: Optional[str]
    to_address: str
    volume: int
    block_height: int
    log_index: int
    tx_ref: str
    timestamp: int

    def to_dict(self) -> Dict:
        return asdict(self)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS blocks (
        height INTEGER PRIMARY KEY,
        hash TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS participants (
        address TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        role_code INTEGER NOT NULL,
        role TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '',
        first_seen_height INTEGER NOT NULL,
        last_updated_height INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS items (
        barcode TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        manufacturer_name TEXT NOT NULL,
        manufactured_label TEXT NOT NULL,
        creator TEXT NOT NULL,
        minted_volume INTEGER NOT NULL CHECK (minted_volume >= 0),
        created_height INTEGER NOT NULL,
        created_tx_ref TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS inventory (
        holder TEXT NOT NULL,
        barcode TEXT NOT NULL REFERENCES items(barcode),
        volume INTEGER NOT NULL CHECK (volume >= 0),
        last_updated_height INTEGER NOT NULL,
        last_updated_tx_ref TEXT,
        PRIMARY KEY (holder, barcode)
    );

    CREATE TABLE IF NOT EXISTS transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_kind TEXT NOT NULL,
        barcode TEXT NOT NULL REFERENCES items(barcode),
        from_address TEXT,
        to_address TEXT NOT NULL,
        volume INTEGER NOT NULL CHECK (volume >= 0),
        block_height INTEGER NOT NULL,
        log_index INTEGER NOT NULL,
        tx_ref TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        UNIQUE (block_height, log_index)
    );

    CREATE TABLE IF NOT EXISTS indexer_state (
        key TEXT PRIMARY KEY,
        value INTEGER NOT NULL,
        updated_at REAL
    );

    CREATE TABLE IF NOT EXISTS projection_faults (
        block_height INTEGER NOT NULL,
        log_index INTEGER NOT NULL,
        fault_kind TEXT NOT NULL,
        detail TEXT,
        occurrences INTEGER NOT NULL DEFAULT 1,
        first_seen_at REAL,
        last_seen_at REAL,
        PRIMARY KEY (block_height, log_index)
    );

    CREATE INDEX IF NOT EXISTS idx_tx_barcode ON transactions(barcode, block_height, log_index);
    CREATE INDEX IF NOT EXISTS idx_tx_ref ON transactions(tx_ref);
    CREATE INDEX IF NOT EXISTS idx_tx_from ON transactions(from_address);
    CREATE INDEX IF NOT EXISTS idx_tx_to ON transactions(to_address);
    CREATE INDEX IF NOT EXISTS idx_inventory_barcode ON inventory(barcode);
"""

CURSOR_KEY = "cursor"

# Largest value a SQLite INTEGER column holds
MAX_VOLUME = 2 ** 63 - 1


class ProjectionStore:
    """
    SQLite-backed projection store.

    Usage:
        store = ProjectionStore("data/observer.db")

        with store.transaction():
            store.upsert_block(height, block_hash, timestamp)
            store.advance_cursor(height)

        store.get_cursor()
        store.close()
    """

    def __init__(self, db_path: str = "data/observer.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._logger = logging.getLogger("ProjectionStore")
        self._lock = threading.RLock()
        self._in_transaction = False

        # Transactions are managed explicitly with BEGIN/COMMIT
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")

        self._init_db()

    def _init_db(self):
        with self._lock:
            self.conn.executescript(SCHEMA)
        self._logger.info(f"Initialized projection store: {self.db_path}")

    def close(self):
        with self._lock:
            self.conn.close()

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator["ProjectionStore"]:
        """
        All-or-nothing write scope.

        Commits on normal exit, rolls back and re-raises on any exception.
        Nested calls join the outer transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return

            self.conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def _fetchone(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _scalar(self, sql: str, params=(), default=0):
        row = self._fetchone(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    # =========================================================================
    # Cursor
    # =========================================================================

    def get_cursor(self) -> Optional[int]:
        """Highest fully projected height, or None if nothing was projected."""
        row = self._fetchone(
            "SELECT value FROM indexer_state WHERE key = ?", (CURSOR_KEY,)
        )
        if row is not None:
            return row[0]

        # Recover from the block table if the state row is missing
        return self._scalar("SELECT MAX(height) FROM blocks", default=None)

    def advance_cursor(self, height: int) -> int:
        """Move the cursor forward to height. Never moves it backwards."""
        with self.transaction():
            self.conn.execute("""
                INSERT INTO indexer_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = MAX(indexer_state.value, excluded.value),
                    updated_at = excluded.updated_at
            """, (CURSOR_KEY, height, time.time()))
        return self.get_cursor()

    # =========================================================================
    # Blocks
    # =========================================================================

    def upsert_block(self, height: int, block_hash: str, timestamp: int):
        with self.transaction():
            self.conn.execute("""
                INSERT INTO blocks (height, hash, timestamp, processed)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(height) DO UPDATE SET
                    hash = excluded.hash,
                    timestamp = excluded.timestamp,
                    processed = 1
            """, (height, block_hash, timestamp))

    def get_block(self, height: int) -> Optional[BlockRecord]:
        row = self._fetchone("SELECT * FROM blocks WHERE height = ?", (height,))
        return self._row_to_block(row) if row else None

    def get_blocks(self, start: int, end: int) -> List[BlockRecord]:
        rows = self._fetchall(
            "SELECT * FROM blocks WHERE height BETWEEN ? AND ? ORDER BY height ASC",
            (start, end)
        )
        return [self._row_to_block(row) for row in rows]

    def count_blocks(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM blocks")

    # =========================================================================
    # Participants
    # =========================================================================

    def upsert_participant(
        self,
        address: str,
        name: str,
        role_code: int,
        role: str,
        metadata: str,
        height: int
    ):
        """
        Insert or update a participant.

        first_seen_height keeps the earliest height. Name, role and metadata
        take the values of the most recent height; an older height never
        overwrites a newer registration.
        """
        with self.transaction():
            self.conn.execute("""
                INSERT INTO participants
                (address, name, role_code, role, metadata, first_seen_height, last_updated_height)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    name = CASE WHEN excluded.last_updated_height >= participants.last_updated_height
                                THEN excluded.name ELSE participants.name END,
                    role_code = CASE WHEN excluded.last_updated_height >= participants.last_updated_height
                                THEN excluded.role_code ELSE participants.role_code END,
                    role = CASE WHEN excluded.last_updated_height >= participants.last_updated_height
                                THEN excluded.role ELSE participants.role END,
                    metadata = CASE WHEN excluded.last_updated_height >= participants.last_updated_height
                                THEN excluded.metadata ELSE participants.metadata END,
                    first_seen_height = MIN(participants.first_seen_height, excluded.first_seen_height),
                    last_updated_height = MAX(participants.last_updated_height, excluded.last_updated_height)
            """, (address.lower(), name, role_code, role, metadata, height, height))

    def get_participant(self, address: str) -> Optional[Participant]:
        row = self._fetchone(
            "SELECT * FROM participants WHERE address = ?", (address.lower(),)
        )
        return self._row_to_participant(row) if row else None

    def list_participants(self) -> List[Participant]:
        rows = self._fetchall(
            "SELECT * FROM participants ORDER BY first_seen_height ASC, address ASC"
        )
        return [self._row_to_participant(row) for row in rows]

    def count_participants(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM participants")

    def count_active_participants(self) -> int:
        """Registered participants that sent or received at least one transaction."""
        return self._scalar("""
            SELECT COUNT(*) FROM participants p
            WHERE EXISTS (
                SELECT 1 FROM transactions t
                WHERE t.from_address = p.address OR t.to_address = p.address
            )
        """)

    # =========================================================================
    # Items
    # =========================================================================

    def insert_item(
        self,
        barcode: str,
        name: str,
        manufacturer_name: str,
        manufactured_label: str,
        creator: str,
        minted_volume: int,
        height: int,
        tx_ref: str
    ) -> bool:
        """Insert an item. Returns False if the barcode already exists."""
        with self.transaction():
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO items
                (barcode, name, manufacturer_name, manufactured_label, creator,
                 minted_volume, created_height, created_tx_ref)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (barcode, name, manufacturer_name, manufactured_label,
                  creator.lower(), minted_volume, height, tx_ref))
            return cursor.rowcount == 1

    def get_item(self, barcode: str) -> Optional[Item]:
        row = self._fetchone("SELECT * FROM items WHERE barcode = ?", (barcode,))
        return self._row_to_item(row) if row else None

    def list_items(self) -> List[Item]:
        rows = self._fetchall("SELECT * FROM items ORDER BY created_height ASC, barcode ASC")
        return [self._row_to_item(row) for row in rows]

    def count_items(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM items")

    # =========================================================================
    # Inventory
    # =========================================================================

    def credit_inventory(
        self,
        holder: str,
        barcode: str,
        amount: int,
        height: int,
        tx_ref: Optional[str]
    ) -> int:
        """Add volume to a holder, creating the entry if needed. Returns new volume."""
        holder = holder.lower()
        with self.transaction():
            self.conn.execute("""
                INSERT INTO inventory (holder, barcode, volume, last_updated_height, last_updated_tx_ref)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(holder, barcode) DO UPDATE SET
                    volume = inventory.volume + excluded.volume,
                    last_updated_height = excluded.last_updated_height,
                    last_updated_tx_ref = excluded.last_updated_tx_ref
            """, (holder, barcode, amount, height, tx_ref))
            return self._volume(holder, barcode)

    def debit_inventory(
        self,
        holder: str,
        barcode: str,
        amount: int,
        height: int,
        tx_ref: Optional[str]
    ) -> int:
        """
        Remove volume from a holder in one compare-and-update statement.

        Returns the remaining volume. Entries reaching zero are kept.
        A zero amount always succeeds, even without an inventory row.

        Raises:
            ConservationViolation: If the holder has less than amount
        """
        holder = holder.lower()
        if amount == 0:
            return self._volume(holder, barcode)

        with self.transaction():
            cursor = self.conn.execute("""
                UPDATE inventory
                SET volume = volume - ?,
                    last_updated_height = ?,
                    last_updated_tx_ref = ?
                WHERE holder = ? AND barcode = ? AND volume >= ?
            """, (amount, height, tx_ref, holder, barcode, amount))

            if cursor.rowcount != 1:
                raise ConservationViolation(
                    barcode=barcode,
                    holder=holder,
                    requested=amount,
                    available=self._volume(holder, barcode),
                    block_height=height
                )
            return self._volume(holder, barcode)

    def replace_inventory(self, entries: List[InventoryEntry]):
        """Swap the whole inventory table for the given entries (rebuild path)."""
        with self.transaction():
            self.conn.execute("DELETE FROM inventory")
            self.conn.executemany("""
                INSERT INTO inventory (holder, barcode, volume, last_updated_height, last_updated_tx_ref)
                VALUES (?, ?, ?, ?, ?)
            """, [(e.holder, e.barcode, e.volume, e.last_updated_height, e.last_updated_tx_ref)
                  for e in entries])

    def _volume(self, holder: str, barcode: str) -> int:
        return self._scalar(
            "SELECT volume FROM inventory WHERE holder = ? AND barcode = ?",
            (holder, barcode)
        )

    def get_inventory_entry(self, holder: str, barcode: str) -> Optional[InventoryEntry]:
        row = self._fetchone(
            "SELECT * FROM inventory WHERE holder = ? AND barcode = ?",
            (holder.lower(), barcode)
        )
        return self._row_to_inventory(row) if row else None

    def get_holder_inventory(self, holder: str, include_empty: bool = False) -> List[Dict]:
        """Inventory of a holder joined with item metadata, ordered by barcode."""
        rows = self._fetchall(f"""
            SELECT i.barcode, i.name, i.manufacturer_name, i.manufactured_label,
                   inv.volume, inv.last_updated_height
            FROM inventory inv
            JOIN items i ON i.barcode = inv.barcode
            WHERE inv.holder = ? {'' if include_empty else 'AND inv.volume > 0'}
            ORDER BY i.barcode ASC
        """, (holder.lower(),))
        return [dict(row) for row in rows]

    def get_item_holders(self, barcode: str) -> List[Dict]:
        """Holders with non-zero volume of an item (unregistered holders included)."""
        rows = self._fetchall("""
            SELECT inv.holder AS address, p.name, p.role, inv.volume
            FROM inventory inv
            LEFT JOIN participants p ON p.address = inv.holder
            WHERE inv.barcode = ? AND inv.volume > 0
            ORDER BY inv.volume DESC, inv.holder ASC
        """, (barcode,))
        return [dict(row) for row in rows]

    def get_all_inventory(self, include_empty: bool = False) -> List[InventoryEntry]:
        where = "" if include_empty else "WHERE volume > 0"
        rows = self._fetchall(f"SELECT * FROM inventory {where} ORDER BY holder, barcode")
        return [self._row_to_inventory(row) for row in rows]

    def sum_item_volume(self, barcode: str) -> int:
        return self._scalar(
            "SELECT SUM(volume) FROM inventory WHERE barcode = ?", (barcode,)
        )

    def total_volume_in_circulation(self) -> int:
        return self._scalar("SELECT SUM(volume) FROM inventory")

    # =========================================================================
    # Transaction Ledger
    # =========================================================================

    def append_transaction(self, record: TransactionRecord) -> bool:
        """
        Append a transaction record.

        Returns False if a record already exists at (block_height, log_index).
        """
        with self.transaction():
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO transactions
                (event_kind, barcode, from_address, to_address, volume,
                 block_height, log_index, tx_ref, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (record.event_kind, record.barcode, record.from_address,
                  record.to_address, record.volume, record.block_height,
                  record.log_index, record.tx_ref, record.timestamp))
            return cursor.rowcount == 1

    def has_transaction(self, block_height: int, log_index: int) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM transactions WHERE block_height = ? AND log_index = ?",
            (block_height, log_index)
        )
        return row is not None

    def get_item_history(self, barcode: str) -> List[TransactionRecord]:
        rows = self._fetchall("""
            SELECT * FROM transactions
            WHERE barcode = ?
            ORDER BY block_height ASC, log_index ASC
        """, (barcode,))
        return [self._row_to_transaction(row) for row in rows]

    def get_transactions_by_ref(self, block_height: int, tx_ref: str) -> List[TransactionRecord]:
        rows = self._fetchall("""
            SELECT * FROM transactions
            WHERE block_height = ? AND tx_ref = ?
            ORDER BY log_index ASC
        """, (block_height, tx_ref))
        return [self._row_to_transaction(row) for row in rows]

    def get_transactions_in_range(self, start: int, end: int) -> List[TransactionRecord]:
        rows = self._fetchall("""
            SELECT * FROM transactions
            WHERE block_height BETWEEN ? AND ?
            ORDER BY block_height ASC, log_index ASC
        """, (start, end))
        return [self._row_to_transaction(row) for row in rows]

    def get_holder_transactions(
        self,
        holder: str,
        max_height: Optional[int] = None
    ) -> List[TransactionRecord]:
        """Transactions touching a holder, optionally up to and including max_height."""
        holder = holder.lower()
        params = [holder, holder]
        height_clause = ""
        if max_height is not None:
            height_clause = "AND block_height <= ?"
            params.append(max_height)

        rows = self._fetchall(f"""
            SELECT * FROM transactions
            WHERE (from_address = ? OR to_address = ?) {height_clause}
            ORDER BY block_height ASC, log_index ASC
        """, params)
        return [self._row_to_transaction(row) for row in rows]

    def iter_transactions(self) -> List[TransactionRecord]:
        """Whole ledger in (height, log index) order."""
        rows = self._fetchall(
            "SELECT * FROM transactions ORDER BY block_height ASC, log_index ASC"
        )
        return [self._row_to_transaction(row) for row in rows]

    def count_transactions(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM transactions")

    # =========================================================================
    # Faults
    # =========================================================================

    def record_fault(self, block_height: int, log_index: int, fault_kind: str, detail: str):
        """Record an integrity fault. Repeats of the same position bump the counter."""
        now = time.time()
        with self.transaction():
            self.conn.execute("""
                INSERT INTO projection_faults
                (block_height, log_index, fault_kind, detail, occurrences, first_seen_at, last_seen_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(block_height, log_index) DO UPDATE SET
                    fault_kind = excluded.fault_kind,
                    detail = excluded.detail,
                    occurrences = projection_faults.occurrences + 1,
                    last_seen_at = excluded.last_seen_at
            """, (block_height, log_index, fault_kind, detail, now, now))

    def get_faults(self, limit: int = 100) -> List[Dict]:
        rows = self._fetchall("""
            SELECT * FROM projection_faults
            ORDER BY block_height DESC, log_index DESC
            LIMIT ?
        """, (limit,))
        return [dict(row) for row in rows]

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self) -> Dict[str, List[Dict]]:
        """Full projected state (excluding faults), for comparisons and debugging."""
        with self._lock:
            return {
                "cursor": self.get_cursor(),
                "blocks": [b.to_dict() for b in self.get_blocks(0, 2 ** 62)],
                "participants": [p.to_dict() for p in self.list_participants()],
                "items": [i.to_dict() for i in self.list_items()],
                "inventory": [e.to_dict() for e in self.get_all_inventory(include_empty=True)],
                "transactions": [t.to_dict() for t in self.iter_transactions()],
            }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _row_to_block(self, row) -> BlockRecord:
        return BlockRecord(
            height=row["height"],
            hash=row["hash"],
            timestamp=row["timestamp"],
            processed=bool(row["processed"])
        )

    def _row_to_participant(self, row) -> Participant:
        return Participant(
            address=row["address"],
            name=row["name"],
            role_code=row["role_code"],
            role=row["role"],
            metadata=row["metadata"] or "",
            first_seen_height=row["first_seen_height"],
            last_updated_height=row["last_updated_height"]
        )

    def _row_to_item(self, row) -> Item:
        return Item(
            barcode=row["barcode"],
            name=row["name"],
            manufacturer_name=row["manufacturer_name"],
            manufactured_label=row["manufactured_label"],
            creator=row["creator"],
            minted_volume=row["minted_volume"],
            created_height=row["created_height"],
            created_tx_ref=row["created_tx_ref"]
        )

    def _row_to_inventory(self, row) -> InventoryEntry:
        return InventoryEntry(
            holder=row["holder"],
            barcode=row["barcode"],
            volume=row["volume"],
            last_updated_height=row["last_updated_height"],
            last_updated_tx_ref=row["last_updated_tx_ref"]
        )

    def _row_to_transaction(self, row) -> TransactionRecord:
        return TransactionRecord(
            event_kind=row["event_kind"],
            barcode=row["barcode"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            volume=row["volume"],
            block_height=row["block_height"],
            log_index=row["log_index"],
            tx_ref=row["tx_ref"],
            timestamp=row["timestamp"]
        )

"""
Query Engine

Read-only views over the projection store, shaped as JSON-serializable
dicts for the API layer.

Absent addresses and barcodes produce None or empty results rather than
exceptions. get_stats() degrades to partial results when a sub-query
fails.
"""

import logging
import sqlite3
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from .projection_store import ProjectionStore


class QueryEngine:
    """
    Read API over the projected supply-chain state.

    Usage:
        engine = QueryEngine(store)
        engine.get_inventory("0x...")
        engine.get_inventory("0x...", as_of_height=10)
        engine.get_audit_trail("B1")
    """

    def __init__(self, store: ProjectionStore):
        self._store = store
        self._logger = logging.getLogger("QueryEngine")

    # =========================================================================
    # Participants
    # =========================================================================

    def list_participants(self) -> List[Dict]:
        return [p.to_dict() for p in self._store.list_participants()]

    def get_participant(self, address: str) -> Optional[Dict]:
        participant = self._store.get_participant(address)
        return participant.to_dict() if participant else None

    # =========================================================================
    # Inventory
    # =========================================================================

    def get_inventory(self, holder: str, as_of_height: Optional[int] = None) -> List[Dict]:
        """
        Items held by an address with their volumes.

        Without as_of_height the live inventory table is used. With it, the
        transaction ledger is folded up to and including that height.
        """
        if as_of_height is None:
            return [
                {
                    "barcode": row["barcode"],
                    "name": row["name"],
                    "manufacturer_name": row["manufacturer_name"],
                    "manufactured_label": row["manufactured_label"],
                    "volume": row["volume"],
                }
                for row in self._store.get_holder_inventory(holder)
            ]

        balances = self._fold_holder_balances(holder, as_of_height)
        inventory = []
        for barcode in sorted(balances):
            volume = balances[barcode]
            if volume <= 0:
                continue
            item = self._store.get_item(barcode)
            inventory.append({
                "barcode": barcode,
                "name": item.name if item else None,
                "manufacturer_name": item.manufacturer_name if item else None,
                "manufactured_label": item.manufactured_label if item else None,
                "volume": volume,
            })
        return inventory

    def get_volume(self, holder: str, barcode: str, as_of_height: Optional[int] = None) -> int:
        """Volume of one item held by an address (0 when none)."""
        if as_of_height is None:
            entry = self._store.get_inventory_entry(holder, barcode)
            return entry.volume if entry else 0
        return self._fold_holder_balances(holder, as_of_height).get(barcode, 0)

    def _fold_holder_balances(self, holder: str, as_of_height: int) -> Dict[str, int]:
        holder = holder.lower()
        balances: Dict[str, int] = defaultdict(int)
        for record in self._store.get_holder_transactions(holder, max_height=as_of_height):
            if record.to_address == holder:
                balances[record.barcode] += record.volume
            if record.from_address == holder:
                balances[record.barcode] -= record.volume
        return dict(balances)

    def check_inventory_consistency(self, holder: str) -> Dict:
        """Compare the live inventory with the ledger fold at the cursor."""
        cursor = self._store.get_cursor()
        live = {row["barcode"]: row["volume"] for row in self._store.get_holder_inventory(holder)}
        folded = {} if cursor is None else {
            barcode: volume
            for barcode, volume in self._fold_holder_balances(holder, cursor).items()
            if volume > 0
        }
        return {
            "holder": holder.lower(),
            "cursor": cursor,
            "consistent": live == folded,
            "live": live,
            "folded": folded,
        }

    # =========================================================================
    # Items
    # =========================================================================

    def get_item(self, barcode: str) -> Optional[Dict]:
        item = self._store.get_item(barcode)
        return item.to_dict() if item else None

    def get_item_history(self, barcode: str) -> List[Dict]:
        """All transaction records for an item in (height, log index) order."""
        return [record.to_dict() for record in self._store.get_item_history(barcode)]

    def get_transaction_proof(self, block_height: int, tx_ref: str) -> Optional[Dict]:
        """Transaction records of a ledger transaction with the hash of its block."""
        records = self._store.get_transactions_by_ref(block_height, tx_ref)
        if not records:
            return None

        block = self._store.get_block(block_height)
        if block is None:
            return None

        return {
            "block_height": block.height,
            "block_hash": block.hash,
            "block_timestamp": block.timestamp,
            "tx_ref": tx_ref,
            "events": [record.to_dict() for record in records],
        }

    def get_audit_trail(self, barcode: str) -> Optional[Dict]:
        """Item metadata, full history and current holders."""
        item = self._store.get_item(barcode)
        if item is None:
            return None

        history = self.get_item_history(barcode)
        holders = self._store.get_item_holders(barcode)
        return {
            "item": item.to_dict(),
            "transaction_history": history,
            "current_holders": holders,
            "total_transactions": len(history),
            "volume_in_circulation": sum(h["volume"] for h in holders),
        }

    def check_conservation(self, barcode: Optional[str] = None) -> List[Dict]:
        """
        Per-item comparison of minted volume and summed holder volume.

        Returns only items where the two disagree (empty list = healthy).
        """
        items = [self._store.get_item(barcode)] if barcode else self._store.list_items()
        mismatches = []
        for item in items:
            if item is None:
                continue
            held = self._store.sum_item_volume(item.barcode)
            if held != item.minted_volume:
                mismatches.append({
                    "barcode": item.barcode,
                    "minted_volume": item.minted_volume,
                    "held_volume": held,
                })
        return mismatches

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict:
        """Global counters; failed sub-queries are reported under "errors"."""
        queries: Dict[str, Callable[[], int]] = {
            "total_participants": self._store.count_participants,
            "total_transactions": self._store.count_transactions,
            "total_items": self._store.count_items,
            "total_inventory_volume": self._store.total_volume_in_circulation,
            "active_participants": self._store.count_active_participants,
        }

        stats: Dict = {}
        errors: Dict[str, str] = {}
        for name, query in queries.items():
            try:
                stats[name] = query()
            except sqlite3.Error as e:
                self._logger.error(f"Stats query {name} failed: {e}")
                stats[name] = None
                errors[name] = str(e)

        if errors:
            stats["errors"] = errors
        return stats

    def get_faults(self, limit: int = 100) -> List[Dict]:
        return self._store.get_faults(limit)

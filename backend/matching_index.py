"""
Reference Matching Index

Lookup structures over the REFERENCE ledger for exact-key matching.

Indexes by:
- Invoice number (normalized)
- Purchase-order number (normalized)

Records whose key normalizes to "" are left out of that index, so an empty
key never matches anything. Building is O(n) and side-effect free.
"""

import hashlib
import logging
import threading
from collections import OrderedDict, defaultdict
from typing import Dict, Iterable, List, Optional

from reconciliation_models import InvoiceRecord, RecordId
from record_parsing import id_sort_key, normalize_key

logger = logging.getLogger(__name__)


class MatchingIndex:
    """
    Indexed REFERENCE records for O(1) key lookups.

    Usage:
        index = MatchingIndex()
        index.build(reference_records)
        candidate_ids = index.lookup_invoice_number("INV-100")
    """

    def __init__(self):
        self.by_invoice_number: Dict[str, List[RecordId]] = defaultdict(list)
        self.by_po_number: Dict[str, List[RecordId]] = defaultdict(list)
        self.records: Dict[RecordId, InvoiceRecord] = {}

    def build(self, records: Iterable[InvoiceRecord]) -> "MatchingIndex":
        """Build index from REFERENCE records (ids assumed unique)."""
        self.clear()

        for record in sorted(records, key=lambda r: id_sort_key(r.id)):
            self.records[record.id] = record

            invoice_key = normalize_key(record.invoice_number)
            if invoice_key:
                self.by_invoice_number[invoice_key].append(record.id)

            po_key = normalize_key(record.po_number)
            if po_key:
                self.by_po_number[po_key].append(record.id)

        logger.debug(
            f"Indexed {len(self.records)} reference records: "
            f"{len(self.by_invoice_number)} invoice keys, {len(self.by_po_number)} PO keys"
        )
        return self

    def lookup_invoice_number(self, invoice_number: Optional[str]) -> List[RecordId]:
        key = normalize_key(invoice_number)
        if not key:
            return []
        return list(self.by_invoice_number.get(key, []))

    def lookup_po_number(self, po_number: Optional[str]) -> List[RecordId]:
        key = normalize_key(po_number)
        if not key:
            return []
        return list(self.by_po_number.get(key, []))

    def get(self, record_id: RecordId) -> Optional[InvoiceRecord]:
        return self.records.get(record_id)

    def clear(self) -> None:
        """Clear all indexes."""
        self.by_invoice_number.clear()
        self.by_po_number.clear()
        self.records.clear()

    def __len__(self) -> int:
        return len(self.records)


def build_index(records: Iterable[InvoiceRecord]) -> MatchingIndex:
    return MatchingIndex().build(records)


def fingerprint_records(records: Iterable[InvoiceRecord]) -> str:
    """Content hash of a record set, independent of input order."""
    rows = sorted(
        (repr(sorted(r.to_dict().items())) for r in records)
    )
    return hashlib.sha256("\n".join(rows).encode()).hexdigest()


class IndexCache:
    """
    Small LRU cache of built indexes keyed by REFERENCE set fingerprint.

    Purely an optimization: a cache miss rebuilds the index.
    """

    def __init__(self, max_entries: int = 8):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, MatchingIndex]" = OrderedDict()
        self._lock = threading.Lock()

    def get_or_build(self, records: List[InvoiceRecord], fingerprint: Optional[str] = None) -> MatchingIndex:
        key = fingerprint or fingerprint_records(records)
        with self._lock:
            index = self._entries.get(key)
            if index is not None:
                self._entries.move_to_end(key)
                return index

        index = build_index(records)

        with self._lock:
            self._entries[key] = index
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return index

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

"""
Persistence collaborator used by the endpoints.

The request-serving layer only needs upsert / query / delete on a handful of
tables (categorizations, analysis sessions, generated CVs, token usage).
RecordStore is that boundary; InMemoryRecordStore backs it inside the process
and is what the tests run against.
"""
import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class RecordStore:
    async def upsert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def delete(self, table: str, record_id: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        raise NotImplementedError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    async def upsert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._tables.setdefault(table, {})
            row = dict(record)
            row.setdefault("id", str(uuid.uuid4()))
            existing = rows.get(row["id"])
            if existing is not None:
                merged = dict(existing)
                merged.update(row)
                row = merged
            else:
                row.setdefault("created_at", _now_iso())
                # insertion order breaks created_at ties
                self._seq += 1
                row["_seq"] = self._seq
            rows[row["id"]] = row
            return _public(row)

    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._tables.get(table, {}).values())
        filters = filters or {}
        matched = [r for r in rows if all(r.get(k) == v for k, v in filters.items())]
        if order_by:
            matched.sort(key=lambda r: (r.get(order_by) or "", r["_seq"]), reverse=descending)
        if limit is not None:
            matched = matched[:limit]
        return [_public(r) for r in matched]

    async def delete(self, table: str, record_id: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            rows = self._tables.get(table, {})
            row = rows.get(record_id)
            if row is None:
                return False
            if filters and not all(row.get(k) == v for k, v in filters.items()):
                return False
            del rows[record_id]
            return True


def _public(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: copy.deepcopy(v) for k, v in row.items() if not k.startswith("_")}

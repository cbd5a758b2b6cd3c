"""
Bill Workflow Hub - Bill Record Store and Transition Log

Storage abstractions consumed by the workflow engine, with a MongoDB (Motor)
implementation for the running service and an in-memory implementation for
tests and local development.

The Transition Log is append-only: records are inserted and read, never
updated or deleted.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


BILLS_COLLECTION = "bills"
TRANSITIONS_COLLECTION = "bill_transitions"


class StorageFaultError(Exception):
    """Raised when a storage collaborator fails to read or write."""
    error_type = "StorageFault"

    def __init__(self, message: str, operation: str = None):
        self.message = message
        self.operation = operation
        super().__init__(message)


def get_path(document: Dict, path: str) -> Any:
    """Read a dotted path from a nested document."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def set_path(document: Dict, path: str, value: Any) -> None:
    """Write a dotted path into a nested document, creating missing parents.

    Like MongoDB, refuses to descend through a parent that exists but is not
    a sub-document (including null).
    """
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        if part not in target:
            target[part] = {}
        elif not isinstance(target[part], dict):
            raise StorageFaultError(
                f"Cannot create field '{path}' in element {{{part}: {target[part]!r}}}",
                operation="update_bill",
            )
        target = target[part]
    target[parts[-1]] = value


def rebase_set_fields(document: Dict, set_fields: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite dotted writes that would pass through a non-dict value in
    `document` as whole sub-document writes at that value's path.

    A bill whose `regional_office` is null gets `{"regional_office": {...}}`
    instead of `{"regional_office.date_given": ...}`.
    """
    rebased: Dict[str, Any] = {}
    for path, value in set_fields.items():
        parts = path.split(".")
        cursor = document
        split = None
        for index, part in enumerate(parts[:-1]):
            if part not in cursor:
                break
            if not isinstance(cursor[part], dict):
                split = index + 1
                break
            cursor = cursor[part]
        if split is None:
            rebased[path] = value
            continue
        block = rebased.setdefault(".".join(parts[:split]), {})
        set_path(block, ".".join(parts[split:]), value)
    return rebased


def _matches(document: Dict, query: Optional[Dict]) -> bool:
    # Equality on dotted paths, the only query shape the engine issues
    if not query:
        return True
    return all(get_path(document, path) == expected for path, expected in query.items())


# =============================================================================
# BILL RECORD STORE
# =============================================================================

class BillStore(ABC):
    """Persists bill snapshots."""

    @abstractmethod
    async def find_by_id(self, bill_id: str) -> Optional[Dict]:
        """Return the bill or None."""
        pass

    @abstractmethod
    async def update_by_id(self, bill_id: str, set_fields: Dict[str, Any],
                           max_fields: Optional[Dict[str, Any]] = None) -> bool:
        """Atomically set dotted fields on one bill and raise each `max_fields`
        entry to at least the given value. Returns False if the bill does not exist."""
        pass

    @abstractmethod
    async def list_bills(self, query: Optional[Dict] = None) -> List[Dict]:
        """Return bills whose dotted fields equal the query values."""
        pass


class MongoBillStore(BillStore):
    """Bill store backed by a Motor database."""

    def __init__(self, db, collection: str = BILLS_COLLECTION):
        self.collection = db[collection]

    async def find_by_id(self, bill_id: str) -> Optional[Dict]:
        try:
            return await self.collection.find_one({"id": bill_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error("Bill lookup failed for %s: %s", bill_id, e)
            raise StorageFaultError(str(e), operation="find_bill")

    async def update_by_id(self, bill_id: str, set_fields: Dict[str, Any],
                           max_fields: Optional[Dict[str, Any]] = None) -> bool:
        update = {"$set": set_fields}
        if max_fields:
            update["$max"] = max_fields
        try:
            result = await self.collection.update_one({"id": bill_id}, update)
        except PyMongoError as e:
            logger.error("Bill update failed for %s: %s", bill_id, e)
            raise StorageFaultError(str(e), operation="update_bill")
        return result.matched_count > 0

    async def list_bills(self, query: Optional[Dict] = None) -> List[Dict]:
        try:
            return await self.collection.find(query or {}, {"_id": 0}).to_list(None)
        except PyMongoError as e:
            logger.error("Bill listing failed: %s", e)
            raise StorageFaultError(str(e), operation="list_bills")


class InMemoryBillStore(BillStore):
    """Bill store kept in a dict. Useful for testing and local runs."""

    def __init__(self, bills: Optional[List[Dict]] = None):
        self._bills: Dict[str, Dict] = {}
        for bill in bills or []:
            self.add(bill)

    def add(self, bill: Dict) -> None:
        """Add or replace a bill snapshot."""
        self._bills[bill["id"]] = copy.deepcopy(bill)

    def get(self, bill_id: str) -> Optional[Dict]:
        """Synchronous copy of a stored bill."""
        bill = self._bills.get(bill_id)
        return copy.deepcopy(bill) if bill is not None else None

    def __len__(self) -> int:
        return len(self._bills)

    async def find_by_id(self, bill_id: str) -> Optional[Dict]:
        return self.get(bill_id)

    async def update_by_id(self, bill_id: str, set_fields: Dict[str, Any],
                           max_fields: Optional[Dict[str, Any]] = None) -> bool:
        bill = self._bills.get(bill_id)
        if bill is None:
            return False
        # Applied to a copy so a refused path leaves the stored bill untouched
        updated = copy.deepcopy(bill)
        for path, value in set_fields.items():
            set_path(updated, path, copy.deepcopy(value))
        for path, value in (max_fields or {}).items():
            current = get_path(updated, path)
            if current is None or value > current:
                set_path(updated, path, value)
        self._bills[bill_id] = updated
        return True

    async def list_bills(self, query: Optional[Dict] = None) -> List[Dict]:
        return [copy.deepcopy(b) for b in self._bills.values() if _matches(b, query)]


# =============================================================================
# TRANSITION LOG
# =============================================================================

class TransitionLog(ABC):
    """Append-only ledger of transition attempts."""

    @abstractmethod
    async def insert(self, record: Dict) -> Dict:
        """Append a record and return it."""
        pass

    @abstractmethod
    async def find_by_bill(self, bill_id: str) -> List[Dict]:
        """All records for a bill, oldest first."""
        pass

    @abstractmethod
    async def find_latest_for_bill(self, bill_id: str) -> Optional[Dict]:
        """Most recent record for a bill, or None."""
        pass

    @abstractmethod
    async def find_by_user(self, user_id: str, limit: int = 50) -> List[Dict]:
        """Records initiated by a user, newest first."""
        pass

    @abstractmethod
    async def list_records(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Dict]:
        """All records across bills."""
        pass


class MongoTransitionLog(TransitionLog):
    """Transition log backed by a Motor database."""

    def __init__(self, db, collection: str = TRANSITIONS_COLLECTION):
        self.collection = db[collection]

    async def insert(self, record: Dict) -> Dict:
        try:
            # insert_one adds _id to the dict it is given
            await self.collection.insert_one(dict(record))
        except PyMongoError as e:
            logger.error("Transition record insert failed for bill %s: %s", record.get("bill_id"), e)
            raise StorageFaultError(str(e), operation="insert_transition")
        return record

    async def find_by_bill(self, bill_id: str) -> List[Dict]:
        try:
            cursor = self.collection.find({"bill_id": bill_id}, {"_id": 0})
            return await cursor.sort([("created_at", 1), ("_id", 1)]).to_list(None)
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="find_transitions")

    async def find_latest_for_bill(self, bill_id: str) -> Optional[Dict]:
        try:
            return await self.collection.find_one(
                {"bill_id": bill_id}, {"_id": 0},
                sort=[("created_at", -1), ("_id", -1)]
            )
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="find_latest_transition")

    async def find_by_user(self, user_id: str, limit: int = 50) -> List[Dict]:
        try:
            cursor = self.collection.find({"from_user.id": user_id}, {"_id": 0})
            return await cursor.sort([("created_at", -1), ("_id", -1)]).limit(limit).to_list(limit)
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="find_user_transitions")

    async def list_records(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Dict]:
        direction = -1 if newest_first else 1
        try:
            cursor = self.collection.find({}, {"_id": 0}).sort([("created_at", direction), ("_id", direction)])
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(limit)
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="list_transitions")


class InMemoryTransitionLog(TransitionLog):
    """Transition log kept in a list, in insertion order."""

    def __init__(self):
        self._records: List[Dict] = []

    def __len__(self) -> int:
        return len(self._records)

    def _ordered(self, records: List[Dict], newest_first: bool = False) -> List[Dict]:
        # sorted() is stable, so insertion order breaks created_at ties
        ordered = sorted(records, key=lambda r: r.get("created_at") or "")
        if newest_first:
            ordered = list(reversed(ordered))
        return [copy.deepcopy(r) for r in ordered]

    async def insert(self, record: Dict) -> Dict:
        self._records.append(copy.deepcopy(record))
        return record

    async def find_by_bill(self, bill_id: str) -> List[Dict]:
        return self._ordered([r for r in self._records if r.get("bill_id") == bill_id])

    async def find_latest_for_bill(self, bill_id: str) -> Optional[Dict]:
        records = await self.find_by_bill(bill_id)
        return records[-1] if records else None

    async def find_by_user(self, user_id: str, limit: int = 50) -> List[Dict]:
        records = [r for r in self._records if get_path(r, "from_user.id") == user_id]
        return self._ordered(records, newest_first=True)[:limit]

    async def list_records(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Dict]:
        records = self._ordered(self._records, newest_first=newest_first)
        return records[:limit] if limit else records

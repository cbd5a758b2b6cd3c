"""
Bill Workflow Hub - Master Data Lookup

Read-only access to the reference data the workflow engine and reports need:
nature-of-work names (for rule guards), vendors (for report rows) and users
(for actor display names in history views).

Master-data CRUD lives outside this service. Lookups return None or skip
entries for unknown references; callers render those as "N/A".
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from .stores import StorageFaultError

logger = logging.getLogger(__name__)


NOT_AVAILABLE = "N/A"


class MasterDataLookup(ABC):
    """Reference data consumed by the engine and the reporting projector."""

    @abstractmethod
    async def get_nature_of_work_name(self, ref: str) -> Optional[str]:
        """Resolve a nature-of-work reference to its name."""
        pass

    @abstractmethod
    async def get_vendors(self, refs: Iterable[str]) -> Dict[str, Dict]:
        """Vendors keyed by reference. Unknown references are absent."""
        pass

    @abstractmethod
    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict]:
        """Users ({name, role, department}) keyed by id. Unknown ids are absent."""
        pass


class MongoMasterDataLookup(MasterDataLookup):
    """Master data read from Mongo collections."""

    def __init__(self, db):
        self.natures = db.nature_of_work_master
        self.vendors = db.vendor_master
        self.users = db.users

    async def get_nature_of_work_name(self, ref: str) -> Optional[str]:
        try:
            doc = await self.natures.find_one({"id": ref}, {"_id": 0, "name": 1})
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="nature_of_work_lookup")
        return doc.get("name") if doc else None

    async def _find_by_ids(self, collection, ids: Iterable[str], projection: Dict) -> Dict[str, Dict]:
        wanted: List[str] = sorted({i for i in ids if i})
        if not wanted:
            return {}
        try:
            docs = await collection.find({"id": {"$in": wanted}}, projection).to_list(len(wanted))
        except PyMongoError as e:
            raise StorageFaultError(str(e), operation="master_data_lookup")
        return {d["id"]: d for d in docs}

    async def get_vendors(self, refs: Iterable[str]) -> Dict[str, Dict]:
        return await self._find_by_ids(
            self.vendors, refs,
            {"_id": 0, "id": 1, "vendor_no": 1, "vendor_name": 1, "gst_number": 1}
        )

    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict]:
        return await self._find_by_ids(
            self.users, user_ids,
            {"_id": 0, "id": 1, "name": 1, "role": 1, "department": 1}
        )


class InMemoryMasterDataLookup(MasterDataLookup):
    """Master data held in dicts. Useful for testing."""

    def __init__(
        self,
        natures: Optional[Dict[str, str]] = None,
        vendors: Optional[Dict[str, Dict]] = None,
        users: Optional[Dict[str, Dict]] = None
    ):
        self.natures = dict(natures or {})
        self.vendors = dict(vendors or {})
        self.users = dict(users or {})

    async def get_nature_of_work_name(self, ref: str) -> Optional[str]:
        return self.natures.get(ref)

    async def get_vendors(self, refs: Iterable[str]) -> Dict[str, Dict]:
        return {r: self.vendors[r] for r in refs if r in self.vendors}

    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict]:
        return {u: self.users[u] for u in user_ids if u in self.users}

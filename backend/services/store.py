"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RepairDesk CRM - Persistent Store Adapter                                   ║
║                                                                              ║
║  Thin async adapter over a Motor database.                                   ║
║  Services never touch collections directly: every read/write goes through    ║
║  insert / update / find_one / find / count / next_sequence.                  ║
║                                                                              ║
║  - driver failures       -> PersistenceError                                 ║
║  - unique index conflict -> DuplicateRecordError                             ║
║  - no matching record    -> NotFoundError (find_one, update)                 ║
║  - Mongo "_id" never leaves this module                                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from services.errors import DuplicateRecordError, NotFoundError, PersistenceError

logger = logging.getLogger("store")

NO_ID = {"_id": 0}

# (collection, keys, unique)
INDEXES = [
    ("leads", [("id", ASCENDING)], True),
    ("leads", [("status", ASCENDING), ("created_at", DESCENDING)], False),
    ("leads", [("assigned_to", ASCENDING)], False),
    ("lead_remarks", [("id", ASCENDING)], True),
    ("lead_remarks", [("lead_id", ASCENDING), ("created_at", DESCENDING)], False),
    ("invoices", [("id", ASCENDING)], True),
    ("invoices", [("invoice_number", ASCENDING)], True),
    ("invoices", [("lead_id", ASCENDING)], False),
    ("staff", [("id", ASCENDING)], True),
    ("staff", [("auth_user_id", ASCENDING)], False),
    ("sessions", [("token", ASCENDING)], True),
    ("activity_logs", [("created_at", DESCENDING)], False),
]


class Store:
    """Collection-level operations with equality filters"""

    def __init__(self, database):
        self.db = database

    async def ensure_indexes(self):
        for collection, keys, unique in INDEXES:
            try:
                await self.db[collection].create_index(keys, unique=unique)
            except PyMongoError as e:
                raise PersistenceError(f"Index creation failed on {collection}: {e}") from e
        logger.info(f"[STORE] {len(INDEXES)} indexes ensured")

    async def insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(record)
        try:
            await self.db[collection].insert_one(doc)
        except DuplicateKeyError as e:
            raise DuplicateRecordError(f"Duplicate key in {collection}: {e}") from e
        except PyMongoError as e:
            raise PersistenceError(f"Insert into {collection} failed: {e}") from e
        doc.pop("_id", None)
        return doc

    async def update(
        self,
        collection: str,
        filter: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        $set patch on the first record matching filter, returns the updated record.

        The record is fetched as it was BEFORE the write and the patch applied to it
        here: the filter may test a field the patch changes (status guard,
        invoice_id None, updated_at), which must not be re-evaluated afterwards.
        """
        try:
            before = await self.db[collection].find_one_and_update(
                filter,
                {"$set": patch},
                projection=NO_ID,
                return_document=ReturnDocument.BEFORE,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Update on {collection} failed: {e}") from e
        if before is None:
            raise NotFoundError(
                f"No record in {collection} matching {filter}",
                collection=collection,
                record_id=filter.get("id"),
            )
        return {**before, **patch}

    async def find_one(self, collection: str, filter: Dict[str, Any]) -> Dict[str, Any]:
        doc = await self.get(collection, filter)
        if doc is None:
            raise NotFoundError(
                f"No record in {collection} matching {filter}",
                collection=collection,
                record_id=filter.get("id"),
            )
        return doc

    async def get(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Like find_one but returns None instead of raising."""
        try:
            return await self.db[collection].find_one(filter, NO_ID)
        except PyMongoError as e:
            raise PersistenceError(f"Read on {collection} failed: {e}") from e

    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: int = 1000,
        skip: int = 0,
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.db[collection].find(filter or {}, NO_ID)
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            return await cursor.to_list(limit)
        except PyMongoError as e:
            raise PersistenceError(f"Query on {collection} failed: {e}") from e

    async def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        try:
            return await self.db[collection].count_documents(filter or {})
        except PyMongoError as e:
            raise PersistenceError(f"Count on {collection} failed: {e}") from e

    # ════════════════════════════════════════════════════════════════════
    # SEQUENCES
    # ════════════════════════════════════════════════════════════════════

    async def sequence_exists(self, name: str) -> bool:
        try:
            return await self.db.counters.find_one({"_id": name}) is not None
        except PyMongoError as e:
            raise PersistenceError(f"Read on counters failed: {e}") from e

    async def ensure_sequence(self, name: str, initial: int = 0):
        """Create the counter at `initial` unless it already exists."""
        try:
            await self.db.counters.update_one(
                {"_id": name},
                {"$setOnInsert": {"seq": initial}},
                upsert=True,
            )
        except DuplicateKeyError:
            # Concurrent upsert created it first
            pass
        except PyMongoError as e:
            raise PersistenceError(f"Counter init failed for {name}: {e}") from e

    async def next_sequence(self, name: str) -> int:
        """Atomically increment and return the counter."""
        try:
            doc = await self.db.counters.find_one_and_update(
                {"_id": name},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Counter increment failed for {name}: {e}") from e
        return int(doc["seq"])

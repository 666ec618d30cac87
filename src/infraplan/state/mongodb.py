"""
Async MongoDB state store using Motor.

Each unit's StateRecord is one document keyed by unit id, so every write
is a single-document replace: atomic per id and safe to issue from many
executor tasks at once.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from motor.motor_asyncio import AsyncIOMotorClient

from .records import StateRecord

logger = logging.getLogger(__name__)


@dataclass
class MongoStateConfig:
    """
    Connection settings for the MongoDB state backend.

    Attributes:
        uri: MongoDB connection string
        db_name: Database holding the state collection
        collection: Collection name; use one per workspace/environment
    """
    uri: str = "mongodb://localhost:27017"
    db_name: str = "infraplan"
    collection: str = "state"


class MongoStateStore:
    """
    StateStore backed by a MongoDB collection.

    Example:
        ```python
        store = MongoStateStore(MongoStateConfig(uri="mongodb://localhost:27017"))
        await store.ensure_indexes_async()
        report = await run_apply(units, provider, store)
        await store.close_async()
        ```
    """

    def __init__(self, config: MongoStateConfig, collection: Any = None):
        """
        Parameters:
        -----------
        config : MongoStateConfig
            Connection settings
        collection : optional
            An already-open async collection (used instead of connecting)
        """
        self.config = config
        self.async_client: Optional[AsyncIOMotorClient] = None

        if collection is None:
            self.async_client = AsyncIOMotorClient(
                config.uri,
                maxPoolSize=50,
                minPoolSize=1,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                socketTimeoutMS=20000,
                retryWrites=True,
                retryReads=True,
                appname='infraplan-state'
            )
            collection = self.async_client[config.db_name][config.collection]

        self.collection = collection
        logger.info(f"[STATE] MongoStateStore using {config.db_name}.{config.collection}")

    async def get(self, unit_id: str) -> Optional[StateRecord]:
        document = await self.collection.find_one({"_id": unit_id})
        if document is None:
            return None
        return self._to_record(document)

    async def put(self, unit_id: str, record: StateRecord) -> None:
        if record.unit_id != unit_id:
            raise ValueError(f"Record for {record.unit_id!r} stored under {unit_id!r}")
        document = record.model_dump(mode="json")
        document["_id"] = unit_id
        await self.collection.replace_one({"_id": unit_id}, document, upsert=True)
        logger.debug(f"[STATE] put {unit_id}")

    async def delete(self, unit_id: str) -> None:
        await self.collection.delete_one({"_id": unit_id})
        logger.debug(f"[STATE] delete {unit_id}")

    async def list_all(self) -> Set[str]:
        cursor = self.collection.find({}, {"_id": 1})
        documents = await cursor.to_list(length=None)
        return {document["_id"] for document in documents}

    async def ensure_indexes_async(self) -> None:
        """Create the secondary indexes used for inspecting state."""
        await self.collection.create_index(
            [("updated_at", -1)],
            name="state_updated_at_idx",
        )
        await self.collection.create_index(
            [("dependencies", 1)],
            name="state_dependencies_idx",
            sparse=True,
        )
        logger.info("[STATE] Indexes ensured")

    async def close_async(self) -> None:
        if self.async_client is not None:
            self.async_client.close()
            logger.info("[STATE] MongoStateStore connections closed")

    @staticmethod
    def _to_record(document: Dict[str, Any]) -> StateRecord:
        data = {key: value for key, value in document.items() if key != "_id"}
        data.setdefault("unit_id", document["_id"])
        return StateRecord.model_validate(data)

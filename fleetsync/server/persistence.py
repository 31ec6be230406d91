"""
MODULE OVERVIEW:
The persistence boundary.

WHAT IS HAPPENING HERE:
The broadcast layer only ever reads the database, and only through the small
PersistenceGateway surface below: "give me the canonical snapshot of X",
"give me the rides in this window", "what is the most recently modified X",
and "open a change stream on X". The CRUD side of the system owns the schema
and all writes; this module only knows enough of it to run those queries.

MongoGateway implements the surface with Motor. Mongoose-style `populate`
joins are expressed as `$lookup` stages so each snapshot is one round trip.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncContextManager, AsyncIterator, Protocol

from bson import ObjectId
from fastapi.encoders import jsonable_encoder
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient

from fleetsync.shared.models import ResourceType

WATCH_PIPELINE = [
    {"$match": {"operationType": {"$in": ["insert", "update", "replace", "delete"]}}},
]
RIDE_FIELDS = ("rideTime", "status", "amount", "service", "driver")


@dataclass(frozen=True)
class Join:
    field: str
    collection: str
    fields: tuple[str, ...]


@dataclass(frozen=True)
class CollectionQuery:
    collection: str
    sort: tuple[tuple[str, int], ...]
    modified_field: str = "updatedAt"
    joins: tuple[Join, ...] = ()
    exclude: tuple[str, ...] = ()

    def pipeline(self, limit: int | None = None) -> list[dict[str, Any]]:
        stages: list[dict[str, Any]] = [{"$sort": dict(self.sort)}]
        if limit:
            stages.append({"$limit": limit})
        for join in self.joins:
            stages.append({
                "$lookup": {
                    "from": join.collection,
                    "localField": join.field,
                    "foreignField": "_id",
                    "as": join.field,
                    "pipeline": [{"$project": {name: 1 for name in join.fields}}],
                }
            })
            stages.append({"$unwind": {"path": f"${join.field}", "preserveNullAndEmptyArrays": True}})
        if self.exclude:
            stages.append({"$project": {name: 0 for name in self.exclude}})
        return stages


CANONICAL_QUERIES: dict[ResourceType, CollectionQuery] = {
    ResourceType.VEHICLES: CollectionQuery(
        collection="vehicles",
        sort=(("updatedAt", -1),),
        joins=(Join("assignedDriver", "drivers", ("name", "phone", "verified")),),
    ),
    ResourceType.DRIVERS: CollectionQuery(
        collection="drivers",
        sort=(("lastUpdate", -1),),
        modified_field="lastUpdate",
    ),
    ResourceType.RIDES: CollectionQuery(
        collection="rides",
        sort=(("createdAt", -1),),
    ),
    ResourceType.ADMINS: CollectionQuery(
        collection="admins",
        sort=(("updatedAt", -1),),
        exclude=("password",),
    ),
    ResourceType.COMPLAINTS: CollectionQuery(
        collection="complaints",
        sort=(("createdAt", -1),),
        joins=(
            Join("vehicleId", "vehicles", ("registrationNumber",)),
            Join("driverId", "drivers", ("name", "phone")),
        ),
    ),
}


def to_jsonable(document: Any) -> Any:
    """ObjectIds become hex strings and datetimes ISO strings."""
    return jsonable_encoder(document, custom_encoder={ObjectId: str})


class PersistenceGateway(Protocol):
    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    async def supports_change_streams(self) -> bool: ...

    async def fetch_collection(self, resource_type: ResourceType) -> list[dict[str, Any]]: ...

    async def latest_modified(self, resource_type: ResourceType) -> tuple[str, datetime] | None: ...

    def watch(self, resource_type: ResourceType) -> AsyncContextManager[AsyncIterator[dict[str, Any]]]: ...

    async def rides_between(
        self, start: datetime, end: datetime, driver_id: str | None = None
    ) -> list[dict[str, Any]]: ...

    async def count_drivers(
        self, online: bool = True, joined_between: tuple[datetime, datetime] | None = None
    ) -> int: ...


class MongoGateway:
    def __init__(
        self,
        url: str,
        database: str,
        rides_limit: int = 50,
        client: AsyncIOMotorClient | None = None,
    ):
        self._client = client or AsyncIOMotorClient(url, tz_aware=True)
        self._db = self._client[database]
        self._rides_limit = rides_limit

    async def ping(self) -> bool:
        await self._client.admin.command("ping")
        return True

    async def close(self) -> None:
        self._client.close()

    async def supports_change_streams(self) -> bool:
        """Change streams need a replica set or a sharded cluster."""
        hello = await self._client.admin.command("hello")
        supported = bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"
        logger.info(f"event=capability change_streams={supported}")
        return supported

    async def fetch_collection(self, resource_type: ResourceType) -> list[dict[str, Any]]:
        query = CANONICAL_QUERIES[resource_type]
        limit = self._rides_limit if resource_type is ResourceType.RIDES else None
        cursor = self._db[query.collection].aggregate(query.pipeline(limit))
        documents = await cursor.to_list(length=None)
        return to_jsonable(documents)

    async def latest_modified(self, resource_type: ResourceType) -> tuple[str, datetime] | None:
        query = CANONICAL_QUERIES[resource_type]
        document = await self._db[query.collection].find_one(
            {query.modified_field: {"$exists": True}},
            projection={query.modified_field: 1},
            sort=[(query.modified_field, -1)],
        )
        if not document:
            return None
        return str(document["_id"]), document[query.modified_field]

    @asynccontextmanager
    async def watch(self, resource_type: ResourceType):
        collection = self._db[CANONICAL_QUERIES[resource_type].collection]
        async with collection.watch(WATCH_PIPELINE, full_document="updateLookup") as stream:
            yield stream

    async def rides_between(
        self, start: datetime, end: datetime, driver_id: str | None = None
    ) -> list[dict[str, Any]]:
        match: dict[str, Any] = {"rideTime": {"$gte": start, "$lte": end}}
        if driver_id:
            # Embedded driver ids are stored either as ObjectIds or as hex strings.
            match["driver._id"] = {"$in": [ObjectId(driver_id), driver_id]}
        cursor = self._db["rides"].find(match, projection={name: 1 for name in RIDE_FIELDS})
        return await cursor.to_list(length=None)

    async def count_drivers(
        self, online: bool = True, joined_between: tuple[datetime, datetime] | None = None
    ) -> int:
        query: dict[str, Any] = {"isOnline": online}
        if joined_between:
            query["joinDate"] = {"$gte": joined_between[0], "$lte": joined_between[1]}
        return await self._db["drivers"].count_documents(query)

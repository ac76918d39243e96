from __future__ import annotations

from typing import Any, List

from pymongo import ReturnDocument

from .db import db
from .utils import now_ts


class EventStore:
    """Sequence-numbered log of everything broadcast for a round stream.

    WebSocket clients get events pushed; this log lets HTTP clients poll or
    replay the same stream.
    """

    def __init__(self, database: Any = None):
        database = database if database is not None else db
        self.counters_collection = database.round_event_counters
        self.events_collection = database.round_events

    async def append(self, stream: str, event: str, data: Any) -> int:
        """Store a new event for a stream and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": stream},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if not counter_doc:
            # Some Mongo-compatible providers complete the upsert but return
            # ``None``; read the counter back directly.
            counter_doc = await self.counters_collection.find_one({"_id": stream}) or {"seq": 1}

        seq = int(counter_doc.get("seq", 1))
        await self.events_collection.insert_one(
            {
                "stream": stream,
                "seq": seq,
                "timestamp": now_ts(),
                "event": event,
                "data": data,
            }
        )
        return seq

    async def list(self, stream: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a stream that occur after the given sequence."""

        query: dict[str, Any] = {"stream": stream}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = self.events_collection.find(query).sort("seq", 1).limit(limit)
        return [
            {
                "seq": doc["seq"],
                "timestamp": doc.get("timestamp"),
                "event": doc.get("event"),
                "data": doc.get("data"),
            }
            async for doc in cursor
        ]

    async def reset(self, stream: str) -> None:
        """Drop a stream's history and emit a reset marker.

        The counter is kept so sequence numbers keep increasing across rounds
        and pollers holding an old ``after`` value never miss the marker.
        """

        await self.events_collection.delete_many({"stream": stream})
        await self.append(stream, "streamReset", None)


event_store = EventStore()

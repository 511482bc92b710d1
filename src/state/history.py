import logging
from datetime import datetime, timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import ServiceUsage, UsageDataPoint, utcnow

logger = logging.getLogger(__name__)


class UsageHistory:
    """Append-only record of usage percentages for charting.

    Only records with real data are stored; error and login records are
    skipped.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["usage_history"]
        else:
            raise ValueError("UsageHistory requires a db or collection")

    async def record(self, usage: ServiceUsage) -> bool:
        if usage.error or usage.needs_login or usage.primary is None:
            return False
        doc = UsageDataPoint(
            ts=usage.updated_at,
            service_id=usage.service_id,
            primary_percent=usage.primary.used_percent,
            secondary_percent=usage.secondary.used_percent if usage.secondary else None,
        ).model_dump()
        try:
            await self._col.insert_one(doc)
        except Exception as e:
            logger.warning("Failed to record usage history for %s: %s", usage.service_id, e)
            return False
        return True

    async def recent(
        self,
        service_id: str,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[UsageDataPoint]:
        since = since or (utcnow() - timedelta(hours=24))
        try:
            cursor = self._col.find({"service_id": service_id, "ts": {"$gte": since}}).sort("ts", 1)
            docs = await cursor.to_list(length=limit)
        except Exception as e:
            logger.warning("History query failed for %s: %s", service_id, e)
            return []
        points: List[UsageDataPoint] = []
        for d in docs:
            d.pop("_id", None)
            points.append(UsageDataPoint.model_validate(d))
        return points

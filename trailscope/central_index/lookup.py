from __future__ import annotations

import logging
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from trailscope.db.models import CentralActorActivity

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000


class CentralIndexLookup:
    """Read side of the central index."""

    def __init__(self, replica: AsyncEngine):
        self.replica = replica

    async def active_actors_since(
        self, timestamp: datetime, batch_size: int = MAX_BATCH_SIZE
    ) -> AsyncIterator[int]:
        """
        Yield central ids of actors whose latest activity on any domain is
        after ``timestamp``, in ascending id order.

        Pages are fetched with a keyset cursor on the central id, so only the
        last id seen is kept between pages. The generator is single-pass:
        iterating again means calling this method again.
        """
        batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        last_id = 0
        while True:
            stmt = (
                select(CentralActorActivity.caa_central_id)
                .group_by(CentralActorActivity.caa_central_id)
                .having(func.max(CentralActorActivity.caa_timestamp) > timestamp)
                .having(CentralActorActivity.caa_central_id > last_id)
                .order_by(CentralActorActivity.caa_central_id)
                .limit(batch_size)
            )
            async with self.replica.connect() as conn:
                ids = list((await conn.execute(stmt)).scalars())
            if not ids:
                return
            logger.debug("central index page after %s: %d actors", last_id, len(ids))
            for central_id in ids:
                yield central_id
            last_id = ids[-1]

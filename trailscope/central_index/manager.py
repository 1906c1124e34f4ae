from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from trailscope.core.clock import as_utc
from trailscope.core.settings import Settings
from trailscope.db.models import CentralActorActivity, CentralTempActivity, DomainMap
from trailscope.repositories.sql import insert_ignore, upsert_latest
from trailscope.security import ip_utils

logger = logging.getLogger(__name__)

# an actor seen this recently is not written again
MIN_UPDATE_INTERVAL = timedelta(minutes=1)
# within this window only one in SAMPLE_RATE actions is written
SAMPLED_UPDATE_INTERVAL = timedelta(hours=1)
SAMPLE_RATE = 10


class CentralIndexManager:
    """
    Write side of the central index: domain ids, activity upserts and the
    per-domain expiry purge.

    Reads that may be stale go to ``replica``; everything that must see
    committed state goes to ``primary``.
    """

    def __init__(
        self,
        primary: AsyncEngine,
        settings: Settings,
        replica: Optional[AsyncEngine] = None,
        rng: Optional[random.Random] = None,
    ):
        self.primary = primary
        self.replica = replica or primary
        self.settings = settings
        self.rng = rng or random.Random()

    @property
    def dialect_name(self) -> str:
        return self.primary.dialect.name

    @staticmethod
    async def _domain_id(conn: AsyncConnection, domain: str) -> Optional[int]:
        stmt = select(DomainMap.dm_id).where(DomainMap.dm_domain == domain)
        return (await conn.execute(stmt)).scalar_one_or_none()

    async def lookup_wiki_id(self, domain: str) -> Optional[int]:
        """Domain id from the replica, None if the domain was never mapped."""
        async with self.replica.connect() as conn:
            return await self._domain_id(conn, domain)

    async def wiki_id_for(self, domain: str) -> int:
        """
        Domain id for ``domain``, allocating one on first use.

        The insert runs on an autocommit connection: if a concurrent writer
        won the race the insert is ignored and the following read sees the
        committed row. Uniqueness is enforced by the ``dm_domain`` key.
        """
        domain_id = await self.lookup_wiki_id(domain)
        if domain_id is not None:
            return domain_id

        async with self.primary.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.execute(insert_ignore(self.dialect_name, DomainMap.__table__).values(dm_domain=domain))
            domain_id = await self._domain_id(conn, domain)
        logger.info("mapped domain %s to id %s", domain, domain_id, extra={"domain": domain})
        return domain_id

    async def purge_expired(self, cutoff: datetime, domain: str, max_rows: int = 100) -> int:
        """
        Delete up to ``max_rows`` expired rows from each of the temp-activity
        and actor-activity tables for one domain. Returns the number of rows
        selected for deletion across both tables.
        """
        domain_id = await self.lookup_wiki_id(domain)
        if domain_id is None:
            return 0

        async with self.primary.begin() as conn:
            temp = CentralTempActivity
            ips = list(
                (
                    await conn.execute(
                        select(temp.cta_ip_hex)
                        .where(temp.cta_domain_id == domain_id, temp.cta_timestamp < cutoff)
                        .limit(max_rows)
                        .with_for_update()
                    )
                ).scalars()
            )
            if ips:
                await conn.execute(
                    delete(temp).where(temp.cta_domain_id == domain_id, temp.cta_ip_hex.in_(ips))
                )

            actors = CentralActorActivity
            central_ids = list(
                (
                    await conn.execute(
                        select(actors.caa_central_id)
                        .where(actors.caa_domain_id == domain_id, actors.caa_timestamp < cutoff)
                        .limit(max_rows)
                        .with_for_update()
                    )
                ).scalars()
            )
            if central_ids:
                await conn.execute(
                    delete(actors).where(actors.caa_domain_id == domain_id, actors.caa_central_id.in_(central_ids))
                )

        purged = len(ips) + len(central_ids)
        logger.debug(
            "central index purge for %s: %d temp, %d actor rows",
            domain,
            len(ips),
            len(central_ids),
            extra={"domain": domain, "purged": purged},
        )
        return purged

    def _excluded(self, ip: Optional[str], groups: Iterable[str]) -> bool:
        if set(groups) & set(self.settings.CENTRAL_INDEX_GROUPS_TO_EXCLUDE):
            return True
        if ip is None:
            return False
        for range_or_ip in self.settings.CENTRAL_INDEX_RANGES_TO_EXCLUDE:
            if not ip_utils.is_ip_address(range_or_ip):
                continue
            if ip_utils.is_in_range(ip, range_or_ip):
                return True
        return False

    async def record_action(
        self,
        central_id: Optional[int],
        ip: Optional[str],
        domain: str,
        timestamp: datetime,
        groups: Iterable[str] = (),
    ) -> bool:
        """
        Note that an actor was active on ``domain``. Returns True if the index
        was written.

        Recently refreshed entries are throttled: nothing is written within
        a minute of the stored timestamp, and within an hour only one action
        in ten gets through.
        """
        if not central_id:
            logger.error("no central id for action on %s, not indexing", domain, extra={"domain": domain})
            return False
        if self._excluded(ip, groups):
            return False

        domain_id = await self.wiki_id_for(domain)
        async with self.replica.connect() as conn:
            last = (
                await conn.execute(
                    select(CentralActorActivity.caa_timestamp).where(
                        CentralActorActivity.caa_domain_id == domain_id,
                        CentralActorActivity.caa_central_id == central_id,
                    )
                )
            ).scalar_one_or_none()

        timestamp = as_utc(timestamp)
        if last is not None:
            last = as_utc(last)
            if last > timestamp - MIN_UPDATE_INTERVAL:
                return False
            if last > timestamp - SAMPLED_UPDATE_INTERVAL and self.rng.randrange(SAMPLE_RATE) != 0:
                return False

        await self.update_actor_index(domain_id, central_id, timestamp)
        return True

    async def update_actor_index(self, domain_id: int, central_id: int, timestamp: datetime) -> None:
        stmt = upsert_latest(
            self.dialect_name,
            CentralActorActivity.__table__,
            {"caa_central_id": central_id, "caa_domain_id": domain_id, "caa_timestamp": timestamp},
            key_columns=("caa_central_id", "caa_domain_id"),
            timestamp_column="caa_timestamp",
        )
        async with self.primary.begin() as conn:
            await conn.execute(stmt)

    async def record_temporary_edit(self, ip: str, domain: str, timestamp: datetime) -> None:
        """Index an edit made from ``ip``. Raises InvalidAddress for a malformed IP."""
        ip_hex = ip_utils.to_hex(ip)
        domain_id = await self.wiki_id_for(domain)
        stmt = upsert_latest(
            self.dialect_name,
            CentralTempActivity.__table__,
            {"cta_ip_hex": ip_hex, "cta_domain_id": domain_id, "cta_timestamp": timestamp},
            key_columns=("cta_ip_hex", "cta_domain_id"),
            timestamp_column="cta_timestamp",
        )
        async with self.primary.begin() as conn:
            await conn.execute(stmt)

    async def active_domains_for_actor(self, central_id: int) -> List[Tuple[str, datetime]]:
        """(domain, last seen) pairs for an actor, most recent first."""
        stmt = (
            select(DomainMap.dm_domain, CentralActorActivity.caa_timestamp)
            .select_from(CentralActorActivity)
            .join(DomainMap, DomainMap.dm_id == CentralActorActivity.caa_domain_id)
            .where(CentralActorActivity.caa_central_id == central_id)
            .order_by(CentralActorActivity.caa_timestamp.desc())
        )
        async with self.replica.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [(domain, as_utc(ts)) for domain, ts in rows]

    async def active_domains_for_ip(self, target: str) -> List[Tuple[str, datetime]]:
        """(domain, last seen) pairs for an IP or range, most recent first."""
        start, end = ip_utils.parse_range(target)
        last_seen = func.max(CentralTempActivity.cta_timestamp).label("last_seen")
        stmt = (
            select(DomainMap.dm_domain, last_seen)
            .select_from(CentralTempActivity)
            .join(DomainMap, DomainMap.dm_id == CentralTempActivity.cta_domain_id)
            .where(CentralTempActivity.cta_ip_hex >= start, CentralTempActivity.cta_ip_hex <= end)
            .group_by(DomainMap.dm_domain)
            .order_by(last_seen.desc())
        )
        async with self.replica.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [(domain, as_utc(ts)) for domain, ts in rows]

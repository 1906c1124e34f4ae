# trailscope/services/retention.py
"""Retention purge for the event logs and the data hanging off them.

Each batch removes at most ``PURGE_BATCH_SIZE`` rows per event log and
then drops the client hint mappings of the removed events. The job runner
calls :meth:`RetentionJob.run_once` on a schedule; maintenance scripts use
:meth:`RetentionJob.run_until_done`.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from trailscope.central_index.manager import CentralIndexManager
from trailscope.core.clock import retention_cutoff
from trailscope.core.settings import Settings
from trailscope.db.session import make_sessionmaker
from trailscope.metrics import CENTRAL_INDEX_PURGED, CLIENTHINT_ROWS_DELETED, PURGE_SKIPPED, PURGED_ROWS
from trailscope.query.columns import EventSource, source_spec
from trailscope.services.clienthints import ClientHintsManager, ClientHintsReferenceIds
from trailscope.services.locks import domain_lock

logger = logging.getLogger(__name__)

__all__ = [
    "ClientHintsReferenceIds",
    "DataPurger",
    "RetentionJob",
    "RetentionReport",
    "purge_central_index",
]


class DataPurger:
    async def purge_from_log(
        self,
        session: AsyncSession,
        source: EventSource,
        cutoff: datetime,
        reference_ids: ClientHintsReferenceIds,
        max_rows: int = 500,
    ) -> int:
        """
        Delete up to ``max_rows`` rows older than ``cutoff`` from one event
        log, recording their client hint references in ``reference_ids``.
        Returns the number of rows deleted; 0 means the log is clean.
        """
        spec = source_spec(source)
        table = spec.table
        id_col = table.c[spec.id_column]
        ref_col = table.c[spec.reference_column]

        victims = (
            await session.execute(
                select(id_col, ref_col).where(table.c[spec.timestamp_column] < cutoff).limit(max_rows)
            )
        ).all()
        if not victims:
            return 0

        reference_ids.add((ref for _, ref in victims), spec.source)
        await session.execute(delete(table).where(id_col.in_([row_id for row_id, _ in victims])))
        PURGED_ROWS.labels(table=table.name).inc(len(victims))
        logger.debug("purged %d rows", len(victims), extra={"table": table.name, "purged": len(victims)})
        return len(victims)


@dataclass
class RetentionReport:
    domain: str
    cutoff: datetime
    skipped: bool = False
    batches: int = 0
    purged: Dict[str, int] = field(default_factory=dict)
    mapping_rows: int = 0
    orphaned_map_rows: int = 0
    orphaned_values: int = 0

    @property
    def total_purged(self) -> int:
        return sum(self.purged.values())


class RetentionJob:
    def __init__(self, engine: AsyncEngine, settings: Settings, purger: Optional[DataPurger] = None):
        self.engine = engine
        self.settings = settings
        self.purger = purger or DataPurger()
        self.sessionmaker = make_sessionmaker(engine)

    def _report(self, domain: Optional[str]) -> RetentionReport:
        domain = domain or self.settings.LOCAL_DOMAIN
        cutoff = retention_cutoff(self.settings.retention_days_for(domain))
        return RetentionReport(domain=domain, cutoff=cutoff)

    async def _purge_batch(self, report: RetentionReport) -> int:
        reference_ids = ClientHintsReferenceIds()
        purged = 0
        async with self.sessionmaker() as session:
            for source in EventSource:
                n = await self.purger.purge_from_log(
                    session, source, report.cutoff, reference_ids, self.settings.PURGE_BATCH_SIZE
                )
                table = source_spec(source).table.name
                report.purged[table] = report.purged.get(table, 0) + n
                purged += n
            mapping_rows = await ClientHintsManager(session).delete_mapping_rows(reference_ids)
            await session.commit()
        report.mapping_rows += mapping_rows
        report.batches += 1
        CLIENTHINT_ROWS_DELETED.labels(kind="map").inc(mapping_rows)
        return purged

    async def _cleanup_orphans(self, report: RetentionReport, until_done: bool) -> None:
        # only deletes rows already unreferenced, so it needs no lock
        async with self.sessionmaker() as session:
            manager = ClientHintsManager(session)
            orphaned_map_rows = await manager.delete_orphaned_map_rows(self.settings.ORPHAN_MAP_SCAN_LIMIT)
            await session.commit()
            orphaned_values = 0
            while True:
                n = await manager.delete_orphaned_values(self.settings.ORPHAN_VALUE_BATCH)
                await session.commit()
                orphaned_values += n
                if not n or not until_done:
                    break
        report.orphaned_map_rows += orphaned_map_rows
        report.orphaned_values += orphaned_values
        CLIENTHINT_ROWS_DELETED.labels(kind="orphan_map").inc(orphaned_map_rows)
        CLIENTHINT_ROWS_DELETED.labels(kind="value").inc(orphaned_values)

    async def _run(self, domain: Optional[str], until_done: bool) -> RetentionReport:
        report = self._report(domain)
        async with domain_lock(self.engine, report.domain, self.settings.PURGE_LOCK_TIMEOUT_SEC) as acquired:
            if not acquired:
                report.skipped = True
                PURGE_SKIPPED.labels(domain=report.domain).inc()
                logger.warning(
                    "purge lock for %s is held elsewhere, skipping until next run",
                    report.domain,
                    extra={"domain": report.domain, "skipped": True},
                )
            else:
                while await self._purge_batch(report) and until_done:
                    pass
        await self._cleanup_orphans(report, until_done)
        logger.info(
            "retention for %s: purged=%d mappings=%d orphan_maps=%d orphan_values=%d",
            report.domain,
            report.total_purged,
            report.mapping_rows,
            report.orphaned_map_rows,
            report.orphaned_values,
            extra={"domain": report.domain, "purged": report.total_purged, "batch": report.batches},
        )
        return report

    async def run_once(self, domain: Optional[str] = None) -> RetentionReport:
        """One bounded batch per event log."""
        return await self._run(domain, until_done=False)

    async def run_until_done(self, domain: Optional[str] = None) -> RetentionReport:
        """Repeat batches until nothing older than the cutoff is left."""
        return await self._run(domain, until_done=True)


async def purge_central_index(
    manager: CentralIndexManager,
    domain: str,
    cutoff: Optional[datetime] = None,
    max_rows: Optional[int] = None,
) -> int:
    """Purge expired central index rows of one domain, batch by batch."""
    settings = manager.settings
    cutoff = cutoff or retention_cutoff(settings.retention_days_for(domain))
    max_rows = max_rows or settings.CENTRAL_INDEX_PURGE_BATCH
    total = 0
    while True:
        n = await manager.purge_expired(cutoff, domain, max_rows)
        total += n
        if not n:
            break
    CENTRAL_INDEX_PURGED.labels(domain=domain).inc(total)
    logger.info("central index purge for %s removed %d rows", domain, total, extra={"domain": domain, "purged": total})
    return total

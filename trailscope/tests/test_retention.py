from datetime import timedelta

import pytest
from sqlalchemy import func, select

from trailscope.core.clock import utcnow
from trailscope.db.models import ChangeEvent, ClientHintMap, ClientHintValue, JobLock, LogEvent, PrivateEvent
from trailscope.metrics import METRICS_REGISTRY
from trailscope.query.columns import EventSource
from trailscope.services.clienthints import ClientHintsData, ClientHintsManager
from trailscope.services.locks import advisory_key, domain_lock, purge_lock_name
from trailscope.services.retention import ClientHintsReferenceIds, DataPurger, RetentionJob


async def count(session, model, *where):
    return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


def sample(name, **labels):
    return METRICS_REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
async def aged_events(session, seed, settings):
    """Three expired and one live event per log, each with client hints."""
    now = utcnow()
    expired = now - timedelta(days=settings.RETENTION_DAYS + 1)
    live = now - timedelta(days=1)
    hints = ClientHintsManager(session)
    actor = await seed.actor()
    for i, ts in enumerate([expired, expired, expired, live]):
        await seed.change(actor, ts - timedelta(minutes=i), this_oldid=100 + i)
        await hints.insert_client_hint_values(
            ClientHintsData(platform=f"change-{i}", bitness="64"), 100 + i, EventSource.CHANGE
        )
        _, log_id = await seed.log_event(actor, ts - timedelta(minutes=i))
        await hints.insert_client_hint_values(
            ClientHintsData(platform=f"log-{i}", bitness="64"), log_id, EventSource.LOG_EVENT
        )
        pe_id = await seed.private_event(actor, ts - timedelta(minutes=i))
        await hints.insert_client_hint_values(
            ClientHintsData(platform=f"private-{i}", bitness="64"), pe_id, EventSource.PRIVATE_EVENT
        )
    await session.commit()
    return expired


async def test_purge_from_log_is_bounded(session, aged_events):
    purger = DataPurger()
    refs = ClientHintsReferenceIds()
    cutoff = aged_events + timedelta(hours=1)

    assert await purger.purge_from_log(session, EventSource.CHANGE, cutoff, refs, max_rows=2) == 2
    assert len(refs.get(EventSource.CHANGE)) == 2
    assert refs.get(EventSource.CHANGE) <= {100, 101, 102}
    assert await purger.purge_from_log(session, EventSource.CHANGE, cutoff, refs, max_rows=2) == 1
    assert await purger.purge_from_log(session, EventSource.CHANGE, cutoff, refs, max_rows=2) == 0
    assert refs.get(EventSource.CHANGE) == {100, 101, 102}
    assert await count(session, ChangeEvent) == 1


async def test_purge_from_log_counts_metric(session, aged_events):
    before = sample("trailscope_purged_rows_total", table="private_events")
    refs = ClientHintsReferenceIds()
    await DataPurger().purge_from_log(session, "private_event", aged_events + timedelta(hours=1), refs)
    assert sample("trailscope_purged_rows_total", table="private_events") == before + 3


async def test_run_until_done_purges_events_and_their_hints(engine, session, settings, aged_events):
    report = await RetentionJob(engine, settings).run_until_done()

    assert report.domain == "testwiki"
    assert not report.skipped
    assert report.purged == {"change_events": 3, "log_events": 3, "private_events": 3}
    assert report.mapping_rows == 18
    # every per-event platform value of a purged event; bitness is still shared
    assert report.orphaned_values == 9

    for model in (ChangeEvent, LogEvent, PrivateEvent):
        assert await count(session, model) == 1
    assert await count(session, ClientHintMap) == 6
    values = set((await session.execute(select(ClientHintValue.chv_value))).scalars())
    assert values == {"change-3", "log-3", "private-3", "64"}


async def test_run_once_takes_one_batch_per_log(engine, session, settings, aged_events):
    job = RetentionJob(engine, settings.model_copy(update={"PURGE_BATCH_SIZE": 2}))
    report = await job.run_once()
    assert report.batches == 1
    assert report.total_purged == 6
    assert await count(session, ChangeEvent) == 2

    report = await job.run_once()
    assert report.total_purged == 3
    assert await count(session, ChangeEvent) == 1


async def test_held_lock_skips_purge_but_cleans_orphans(engine, session, settings, aged_events):
    session.add(ClientHintValue(chv_name="model", chv_value="unreferenced"))
    await session.commit()
    skipped_before = sample("trailscope_purge_skipped_total", domain="testwiki")

    async with domain_lock(engine, "testwiki") as held:
        assert held
        report = await RetentionJob(engine, settings).run_once()

    assert report.skipped
    assert report.total_purged == 0
    assert report.orphaned_values == 1
    assert await count(session, ChangeEvent) == 4
    assert sample("trailscope_purge_skipped_total", domain="testwiki") == skipped_before + 1

    # released again after the block
    report = await RetentionJob(engine, settings).run_once()
    assert not report.skipped
    assert report.total_purged == 9


async def test_lock_is_exclusive_and_expires(engine, session):
    async with domain_lock(engine, "enwiki") as first:
        async with domain_lock(engine, "enwiki") as second:
            assert first and not second
        async with domain_lock(engine, "dewiki") as other:
            assert other
    assert await count(session, JobLock) == 0

    session.add(
        JobLock(jl_name=purge_lock_name("enwiki"), jl_owner="crashed", jl_expires=utcnow() - timedelta(seconds=1))
    )
    await session.commit()
    async with domain_lock(engine, "enwiki") as taken_over:
        assert taken_over


def test_advisory_key_is_a_stable_signed_bigint():
    key = advisory_key(purge_lock_name("enwiki"))
    assert key == advisory_key(purge_lock_name("enwiki"))
    assert key != advisory_key(purge_lock_name("dewiki"))
    assert -(2**63) <= key < 2**63

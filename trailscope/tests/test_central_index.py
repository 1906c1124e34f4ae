import asyncio
import random
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from trailscope.central_index.lookup import CentralIndexLookup
from trailscope.central_index.manager import CentralIndexManager
from trailscope.core.clock import as_utc
from trailscope.db.models import CentralActorActivity, CentralTempActivity, DomainMap
from trailscope.errors import InvalidAddress
from trailscope.services.retention import purge_central_index


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__()
        self.value = value

    def randrange(self, *args, **kwargs):
        return self.value


@pytest.fixture
def manager(engine, settings):
    return CentralIndexManager(engine, settings)


async def count(engine, model, *where):
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def stored_timestamp(engine, domain_id, central_id):
    async with engine.connect() as conn:
        ts = (
            await conn.execute(
                select(CentralActorActivity.caa_timestamp).where(
                    CentralActorActivity.caa_domain_id == domain_id,
                    CentralActorActivity.caa_central_id == central_id,
                )
            )
        ).scalar_one_or_none()
    return as_utc(ts) if ts is not None else None


async def test_wiki_id_is_stable(manager, engine):
    first = await manager.wiki_id_for("enwiki")
    assert await manager.wiki_id_for("enwiki") == first
    assert await manager.wiki_id_for("dewiki") != first
    assert await count(engine, DomainMap) == 2


async def test_concurrent_first_calls_converge(manager, engine):
    ids = await asyncio.gather(*(manager.wiki_id_for("frwiki") for _ in range(5)))
    assert len(set(ids)) == 1
    assert await count(engine, DomainMap, DomainMap.dm_domain == "frwiki") == 1


async def test_purge_is_bounded_and_scoped_to_domain(manager, engine, now):
    cutoff = now - timedelta(days=30)
    old, fresh = cutoff - timedelta(days=1), cutoff + timedelta(days=1)
    en = await manager.wiki_id_for("enwiki")
    de = await manager.wiki_id_for("dewiki")
    for central_id in range(1, 6):
        await manager.update_actor_index(en, central_id, old)
        await manager.update_actor_index(de, central_id, old)
    for central_id in range(6, 9):
        await manager.update_actor_index(en, central_id, fresh)
    for i in range(4):
        await manager.record_temporary_edit(f"10.0.0.{i}", "enwiki", old)
    await manager.record_temporary_edit("10.0.0.99", "enwiki", fresh)

    assert await manager.purge_expired(cutoff, "enwiki", max_rows=2) == 4
    assert await count(engine, CentralActorActivity, CentralActorActivity.caa_domain_id == en) == 6

    rounds = []
    while True:
        purged = await manager.purge_expired(cutoff, "enwiki", max_rows=2)
        if not purged:
            break
        rounds.append(purged)
    assert rounds == [4, 1]

    assert await count(engine, CentralActorActivity, CentralActorActivity.caa_domain_id == en) == 3
    assert await count(engine, CentralTempActivity, CentralTempActivity.cta_domain_id == en) == 1
    assert await count(engine, CentralActorActivity, CentralActorActivity.caa_domain_id == de) == 5


async def test_purge_of_unknown_domain_does_not_map_it(manager, engine, now):
    assert await manager.purge_expired(now, "nowiki") == 0
    assert await count(engine, DomainMap) == 0


async def test_purge_central_index_loops_until_clean(manager, engine, settings, now):
    en = await manager.wiki_id_for("enwiki")
    old = now - timedelta(days=settings.RETENTION_DAYS + 1)
    for central_id in range(1, 8):
        await manager.update_actor_index(en, central_id, old)
    assert await purge_central_index(manager, "enwiki", cutoff=now - timedelta(days=1), max_rows=3) == 7
    assert await count(engine, CentralActorActivity) == 0


async def test_upsert_keeps_latest_timestamp(manager, engine, now):
    en = await manager.wiki_id_for("enwiki")
    await manager.update_actor_index(en, 1, now)
    await manager.update_actor_index(en, 1, now - timedelta(hours=2))
    assert await stored_timestamp(engine, en, 1) == now
    await manager.update_actor_index(en, 1, now + timedelta(hours=1))
    assert await stored_timestamp(engine, en, 1) == now + timedelta(hours=1)
    assert await count(engine, CentralActorActivity) == 1


async def test_record_action_exclusions(manager, engine, now):
    assert await manager.record_action(1, "10.0.0.1", "enwiki", now, groups=["bot", "sysop"]) is False
    assert await manager.record_action(1, "192.168.4.4", "enwiki", now) is False
    assert await manager.record_action(None, "10.0.0.1", "enwiki", now) is False
    assert await count(engine, CentralActorActivity) == 0


async def test_record_action_throttles_recent_writes(engine, settings, now):
    manager = CentralIndexManager(engine, settings, rng=FixedRandom(5))
    assert await manager.record_action(1, "10.0.0.1", "enwiki", now) is True
    en = await manager.wiki_id_for("enwiki")

    # within a minute: never written
    assert await manager.record_action(1, "10.0.0.1", "enwiki", now + timedelta(seconds=30)) is False
    # within an hour: only when the one-in-ten draw hits
    assert await manager.record_action(1, "10.0.0.1", "enwiki", now + timedelta(minutes=30)) is False
    assert await stored_timestamp(engine, en, 1) == now

    manager.rng = FixedRandom(0)
    assert await manager.record_action(1, "10.0.0.1", "enwiki", now + timedelta(minutes=30)) is True
    assert await stored_timestamp(engine, en, 1) == now + timedelta(minutes=30)

    manager.rng = FixedRandom(5)
    later = now + timedelta(hours=3)
    assert await manager.record_action(1, None, "enwiki", later) is True
    assert await stored_timestamp(engine, en, 1) == later


async def test_record_temporary_edit_rejects_bad_ip(manager, now):
    with pytest.raises(InvalidAddress):
        await manager.record_temporary_edit("not-an-ip", "enwiki", now)


async def test_active_domains(manager, now):
    en = await manager.wiki_id_for("enwiki")
    de = await manager.wiki_id_for("dewiki")
    await manager.update_actor_index(en, 1, now - timedelta(days=2))
    await manager.update_actor_index(de, 1, now)
    assert await manager.active_domains_for_actor(1) == [("dewiki", now), ("enwiki", now - timedelta(days=2))]
    assert await manager.active_domains_for_actor(2) == []

    await manager.record_temporary_edit("10.0.0.5", "enwiki", now)
    await manager.record_temporary_edit("10.0.0.6", "enwiki", now - timedelta(days=1))
    await manager.record_temporary_edit("10.0.0.7", "dewiki", now - timedelta(days=3))
    await manager.record_temporary_edit("10.0.1.7", "frwiki", now)
    assert await manager.active_domains_for_ip("10.0.0.0/24") == [
        ("enwiki", now),
        ("dewiki", now - timedelta(days=3)),
    ]


async def test_active_actors_since_pages_by_central_id(manager, engine, now):
    en = await manager.wiki_id_for("enwiki")
    de = await manager.wiki_id_for("dewiki")
    since = now - timedelta(days=7)
    # actor 3 is stale on one domain but recent on the other
    for central_id, domain_id, ts in [
        (1, en, now),
        (2, en, since - timedelta(days=1)),
        (3, en, since - timedelta(days=5)),
        (3, de, now),
        (4, de, now - timedelta(days=1)),
        (5, en, since - timedelta(days=2)),
        (6, de, now),
        (7, en, now),
    ]:
        await manager.update_actor_index(domain_id, central_id, ts)

    lookup = CentralIndexLookup(engine)
    active = [central_id async for central_id in lookup.active_actors_since(since, batch_size=2)]
    assert active == [1, 3, 4, 6, 7]

    assert [c async for c in lookup.active_actors_since(now)] == []

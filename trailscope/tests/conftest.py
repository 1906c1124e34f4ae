# trailscope/tests/conftest.py
import sys, pathlib
from dotenv import load_dotenv

# project root on sys.path (trailscope/tests -> trailscope -> ROOT: parents[2])
ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

load_dotenv()

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from trailscope.core.settings import Settings
from trailscope.db.session import init_models, make_engine, make_sessionmaker
from trailscope.repositories import events as repo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        LOCAL_DOMAIN="testwiki",
        RETENTION_DAYS=30,
        CENTRAL_INDEX_GROUPS_TO_EXCLUDE=["bot"],
        CENTRAL_INDEX_RANGES_TO_EXCLUDE=["192.168.0.0/16", "not-a-range"],
    )


@pytest.fixture
async def engine(tmp_path):
    # file-backed so separate connections (autocommit, locks) see the same data
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'trailscope.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def session(engine):
    async with make_sessionmaker(engine)() as s:
        yield s


class Seeder:
    """Writes events into all three logs and remembers what it wrote."""

    def __init__(self, session):
        self.session = session
        # (source, id, timestamp)
        self.written: List[Tuple[str, int, datetime]] = []

    async def actor(self, name: str = "Alice", user_id: Optional[int] = None) -> int:
        return await repo.ensure_actor(self.session, name=name, user_id=user_id)

    async def change(self, actor_id: int, ts: datetime, ip: str = "10.0.0.1", **kw) -> int:
        ce_id = await repo.insert_change(self.session, actor_id=actor_id, timestamp=ts, ip=ip, **kw)
        self.written.append(("change", ce_id, ts))
        return ce_id

    async def log_event(
        self, actor_id: int, ts: datetime, ip: str = "10.0.0.1", title: str = "Log page", comment_id=None, **kw
    ) -> Tuple[int, int]:
        log_id = await repo.insert_log_entry(
            self.session,
            log_type="block",
            log_action="block",
            actor_id=actor_id,
            timestamp=ts,
            title=title,
            comment_id=comment_id,
        )
        le_id = await repo.insert_log_event(self.session, log_id=log_id, actor_id=actor_id, timestamp=ts, ip=ip, **kw)
        self.written.append(("log_event", le_id, ts))
        return le_id, log_id

    async def private_event(self, actor_id: int, ts: datetime, ip: str = "10.0.0.1", **kw) -> int:
        kw.setdefault("log_type", "login")
        kw.setdefault("log_action", "login-failure")
        pe_id = await repo.insert_private_event(self.session, actor_id=actor_id, timestamp=ts, ip=ip, **kw)
        self.written.append(("private_event", pe_id, ts))
        return pe_id

    def newest(self, k: int) -> List[Tuple[str, int]]:
        ordered = sorted(self.written, key=lambda w: w[2], reverse=True)
        return [(source, row_id) for source, row_id, _ in ordered[:k]]


@pytest.fixture
def seed(session):
    return Seeder(session)


def minutes_ago(n: int) -> datetime:
    return NOW - timedelta(minutes=n)


@pytest.fixture
def ago():
    return minutes_ago

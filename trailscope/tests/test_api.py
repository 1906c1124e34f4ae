import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families

from trailscope.main import app


@pytest.fixture
async def client():
    # ASGITransport does not run startup hooks, so the scheduler stays off
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_metrics_exports_purge_counters(client):
    r = await client.get("/metrics")
    assert r.status_code == 200
    samples = {s.name for fam in text_string_to_metric_families(r.text) for s in fam.samples}
    assert "trailscope_purged_rows_total" in samples
    assert "trailscope_clienthint_rows_deleted_total" in samples
    assert "trailscope_purge_skipped_total" in r.text


async def test_debug_config_hides_connection_strings(client):
    r = await client.get("/_debug/config")
    assert r.status_code == 200
    body = r.json()["settings"]
    assert "RETENTION_DAYS" in body
    assert "DATABASE_URL" not in body
    assert "REPLICA_DATABASE_URL" not in body

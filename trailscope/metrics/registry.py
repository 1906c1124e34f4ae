from __future__ import annotations

import builtins

from prometheus_client import CollectorRegistry, Counter

# survives module reloads (uvicorn --reload, pytest re-imports)
_KEY = "_trailscope_metrics_singleton_v1"

if hasattr(builtins, _KEY):
    _store = getattr(builtins, _KEY)
    METRICS_REGISTRY = _store["registry"]
    PURGED_ROWS = _store["purged"]
    PURGE_SKIPPED = _store["skipped"]
    CLIENTHINT_ROWS_DELETED = _store["clienthints"]
    CENTRAL_INDEX_PURGED = _store["central"]
else:
    METRICS_REGISTRY = CollectorRegistry()
    PURGED_ROWS = Counter(
        "trailscope_purged_rows_total",
        "Event rows removed by the retention purge",
        ["table"],
        registry=METRICS_REGISTRY,
    )
    PURGE_SKIPPED = Counter(
        "trailscope_purge_skipped_total",
        "Retention runs skipped because the domain lock was held",
        ["domain"],
        registry=METRICS_REGISTRY,
    )
    CLIENTHINT_ROWS_DELETED = Counter(
        "trailscope_clienthint_rows_deleted_total",
        "Client hint rows removed, by kind (map, value, orphan_map)",
        ["kind"],
        registry=METRICS_REGISTRY,
    )
    CENTRAL_INDEX_PURGED = Counter(
        "trailscope_central_index_purged_total",
        "Central index rows removed by the expiry purge",
        ["domain"],
        registry=METRICS_REGISTRY,
    )
    for _table in ("change_events", "log_events", "private_events"):
        PURGED_ROWS.labels(table=_table).inc(0)
    for _kind in ("map", "value", "orphan_map"):
        CLIENTHINT_ROWS_DELETED.labels(kind=_kind).inc(0)
    setattr(
        builtins,
        _KEY,
        dict(
            registry=METRICS_REGISTRY,
            purged=PURGED_ROWS,
            skipped=PURGE_SKIPPED,
            clienthints=CLIENTHINT_ROWS_DELETED,
            central=CENTRAL_INDEX_PURGED,
        ),
    )


def get_metrics() -> dict[str, object]:
    return {
        "registry": METRICS_REGISTRY,
        "purged": PURGED_ROWS,
        "skipped": PURGE_SKIPPED,
        "clienthints": CLIENTHINT_ROWS_DELETED,
        "central": CENTRAL_INDEX_PURGED,
    }

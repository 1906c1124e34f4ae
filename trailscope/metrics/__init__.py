# trailscope/metrics/__init__.py
"""
Re-exports of the metric singletons kept in trailscope.metrics.registry,
for imports like `from trailscope.metrics import PURGED_ROWS`.
"""
from .registry import (
    CENTRAL_INDEX_PURGED,
    CLIENTHINT_ROWS_DELETED,
    METRICS_REGISTRY,
    PURGE_SKIPPED,
    PURGED_ROWS,
    get_metrics,
)

__all__ = [
    "METRICS_REGISTRY",
    "PURGED_ROWS",
    "PURGE_SKIPPED",
    "CLIENTHINT_ROWS_DELETED",
    "CENTRAL_INDEX_PURGED",
    "get_metrics",
]

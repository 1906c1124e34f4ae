# trailscope/repositories/sql.py
from typing import Any, Dict, Sequence

from sqlalchemy import Insert, Table, case, func, insert
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

_ON_CONFLICT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def insert_ignore(dialect_name: str, table: Table) -> Insert:
    """INSERT that silently skips rows violating a unique key."""
    if dialect_name in _ON_CONFLICT_INSERTS:
        return _ON_CONFLICT_INSERTS[dialect_name](table).on_conflict_do_nothing()
    if dialect_name in ("mysql", "mariadb"):
        return insert(table).prefix_with("IGNORE")
    raise NotImplementedError(f"insert ignore is not supported on {dialect_name}")


def upsert_latest(
    dialect_name: str,
    table: Table,
    values: Dict[str, Any],
    key_columns: Sequence[str],
    timestamp_column: str,
) -> Insert:
    """
    Insert a row or, when the key exists, keep whichever timestamp is newer.
    Replaying an older write never moves a timestamp backwards.
    """
    current = table.c[timestamp_column]
    if dialect_name in _ON_CONFLICT_INSERTS:
        stmt = _ON_CONFLICT_INSERTS[dialect_name](table).values(**values)
        incoming = stmt.excluded[timestamp_column]
        return stmt.on_conflict_do_update(
            index_elements=list(key_columns),
            set_={timestamp_column: case((incoming > current, incoming), else_=current)},
        )
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql_insert(table).values(**values)
        return stmt.on_duplicate_key_update(
            {timestamp_column: func.greatest(current, stmt.inserted[timestamp_column])}
        )
    raise NotImplementedError(f"upsert is not supported on {dialect_name}")

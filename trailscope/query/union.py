"""Time-ordered queries across the three event logs.

Each event log gets its own SELECT (a branch) projecting into the common
column set. The branches are combined with UNION ALL into one aliased
pseudo-table which is then filtered, ordered and limited as a whole::

    engine = UnionQueryEngine(session)
    engine.where_target(resolved, forwarded_for=False)
    engine.between(start, end)
    engine.order_by("timestamp", "id").limit(50)
    rows = await engine.fetch_all()

When both an order and a limit are set, every branch is ordered by the
same key and limited to the same value, so at most ``3 * limit`` rows are
unioned no matter how large the logs are.

The UNION statement is rebuilt on every terminal call and never kept on
the engine, so an engine can be reconfigured and reused sequentially.
It must not be shared between concurrent tasks.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import Select, and_, cast, func, literal, null, select, type_coerce, union_all
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.base import ColumnCollection
from sqlalchemy.sql.elements import ColumnElement, Label
from sqlalchemy.types import DateTime

from trailscope.errors import MalformedProjection
from trailscope.query.columns import (
    ACTOR_TABLE,
    COMMENT_TABLE,
    COMMON_COLUMNS,
    JOINED_COLUMNS,
    LOG_TABLE,
    SOURCES,
    ColumnSpec,
    EventSource,
    Origin,
    SourceSpec,
)
from trailscope.security.targets import ActorTarget, Classification, Invalid, IPRange, SingleIP

logger = logging.getLogger(__name__)

UNION_ALIAS = "event_union"

Criterion = Union[ColumnElement, Callable[[SourceSpec], ColumnElement]]
PerSource = Union[Criterion, Mapping["EventSource | str", Any]]


def typed_null(type_, dialect_name: str) -> ColumnElement:
    """NULL placeholder that keeps a UNION column's type.

    PostgreSQL cannot infer the type of a bare NULL in a UNION branch, so
    it gets an explicit CAST; elsewhere the type only matters Python-side.
    """
    if dialect_name == "postgresql":
        return cast(null(), type_)
    return type_coerce(null(), type_)


def _type_instance(spec: ColumnSpec):
    if spec.type_ is DateTime:
        return DateTime(timezone=True)
    return spec.type_()


def _per_source(value: PerSource) -> Dict[EventSource, Any]:
    """Expand a value meant for every source, or a {source: value} mapping."""
    if isinstance(value, Mapping):
        return {EventSource.parse(k): v for k, v in value.items()}
    return {source: value for source in SOURCES}


class UnionQueryEngine:
    def __init__(self, session: AsyncSession, sources: Optional[Iterable[EventSource]] = None):
        self.session = session
        self.sources: Tuple[EventSource, ...] = tuple(sources) if sources else tuple(SOURCES)
        self._fields: Optional[List[str]] = None
        self._sub_fields: Dict[EventSource, Optional[List[str]]] = {s: None for s in self.sources}
        self._sub_where: Dict[EventSource, List[Criterion]] = {s: [] for s in self.sources}
        self._target_where: Dict[EventSource, ColumnElement] = {}
        self._use_index: Dict[EventSource, str] = {}
        self._sub_order: Dict[EventSource, List[Tuple[str, bool]]] = {}
        self._sub_limit: Optional[int] = None
        self._actor_join = False
        self._comment_join = False
        self._window: Tuple[Optional[Any], Optional[Any]] = (None, None)
        self._where: List[Callable[[Any], ColumnElement]] = []
        self._order: List[Tuple[str, bool]] = []
        self._limit: Optional[int] = None
        self._empty = False

    # --- configuration --------------------------------------------------

    def fields(self, names: Optional[Sequence[str]]) -> "UnionQueryEngine":
        """Outer projection; None selects every column of the union."""
        self._fields = list(names) if names is not None else None
        return self

    def sub_query_fields(
        self, names: Union[None, Sequence[str], Mapping["EventSource | str", Optional[Sequence[str]]]]
    ) -> "UnionQueryEngine":
        """
        Columns projected by each branch, as common column names. Either one
        list for every source or a mapping of source -> list. The union
        matches columns by position, so every branch must project the same
        number of columns; ``timestamp`` is always added when missing.
        """
        if names is None or isinstance(names, Mapping):
            per_source = _per_source(names or {})
        else:
            per_source = {s: names for s in self.sources}
        for source in self.sources:
            chosen = per_source.get(source)
            self._sub_fields[source] = None if chosen is None else self._with_timestamp(chosen)
        self._check_projection_counts()
        return self

    def sub_query_where(self, criteria: PerSource) -> "UnionQueryEngine":
        """
        Add a branch condition. A plain expression or a callable taking the
        :class:`SourceSpec` applies to every branch; a mapping applies per source.
        """
        for source, criterion in _per_source(criteria).items():
            if source in self._sub_where:
                self._sub_where[source].append(criterion)
        return self

    def sub_query_use_index(self, indexes: Mapping["EventSource | str", str]) -> "UnionQueryEngine":
        for source, index in _per_source(indexes).items():
            self._use_index[source] = index
        return self

    def sub_query_order_by(
        self, order: Union[Sequence[Tuple[str, bool]], Mapping["EventSource | str", Sequence[Tuple[str, bool]]]]
    ) -> "UnionQueryEngine":
        """Explicit per-branch order as (column, descending) pairs."""
        if isinstance(order, Mapping):
            per_source = _per_source(order)
        else:
            per_source = {s: order for s in self.sources}
        for source, pairs in per_source.items():
            self._sub_order[source] = [(name, bool(desc)) for name, desc in pairs]
        return self

    def sub_query_limit(self, limit: Optional[int]) -> "UnionQueryEngine":
        self._sub_limit = limit
        return self

    def needs_actor_join(self) -> "UnionQueryEngine":
        self._actor_join = True
        return self

    def needs_comment_join(self) -> "UnionQueryEngine":
        self._comment_join = True
        return self

    def where_target(self, target: Classification, forwarded_for: bool = False) -> "UnionQueryEngine":
        """
        Restrict every branch to a resolved target and pick the matching
        covering index. An :class:`Invalid` target leaves nothing to match,
        so the query returns no rows.
        """
        self._target_where.clear()
        self._use_index.clear()
        self._empty = False
        if isinstance(target, Invalid):
            logger.debug("no predicate for %r: %s", target.target, target.reason)
            self._empty = True
            return self
        for source in self.sources:
            spec = SOURCES[source]
            table = spec.table
            if isinstance(target, ActorTarget):
                expr = table.c[spec.actor_column] == target.actor_id
                index = spec.index_name(None)
            else:
                hex_col = table.c[spec.hex_column(forwarded_for)]
                if isinstance(target, SingleIP):
                    expr = hex_col == target.key
                elif isinstance(target, IPRange):
                    expr = and_(hex_col >= target.start, hex_col <= target.end)
                else:
                    raise TypeError(f"cannot query for {target!r}")
                index = spec.index_name(forwarded_for)
            self._target_where[source] = expr
            self._use_index[source] = index
        return self

    def between(self, start=None, end=None) -> "UnionQueryEngine":
        """Inclusive time window applied to every branch; either end may be open."""
        self._window = (start, end)
        return self

    def where(self, *criteria: Callable[[Any], ColumnElement]) -> "UnionQueryEngine":
        """Outer conditions, given as callables over the union's columns."""
        self._where.extend(criteria)
        return self

    def order_by(self, *names: str, desc: bool = True) -> "UnionQueryEngine":
        self._order = [(name, desc) for name in names]
        return self

    def limit(self, limit: Optional[int]) -> "UnionQueryEngine":
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")
        self._limit = limit
        return self

    # --- projection -----------------------------------------------------

    @staticmethod
    def _with_timestamp(names: Sequence[str]) -> List[str]:
        names = list(names)
        if "timestamp" not in names:
            names.append("timestamp")
        return names

    def _all_fields(self) -> List[str]:
        joined = {Origin.ACTOR: self._actor_join, Origin.COMMENT: self._comment_join}
        return [n for n in COMMON_COLUMNS if n not in JOINED_COLUMNS or joined[JOINED_COLUMNS[n]]]

    def _branch_fields(self, source: EventSource) -> List[str]:
        names = self._sub_fields.get(source)
        if names is None:
            names = self._all_fields()
        else:
            names = list(names)
        for name, _ in self._order:
            if name not in names and self._sub_fields.get(source) is not None:
                names.append(name)
        return names

    def _check_projection_counts(self) -> None:
        counts = {source.value: len(self._branch_fields(source)) for source in self.sources}
        if len(set(counts.values())) > 1:
            raise MalformedProjection(f"sub-query field counts differ across sources: {counts}")

    def _expression(self, spec: SourceSpec, name: str, dialect_name: str) -> ColumnElement:
        try:
            cs = spec.columns[name]
        except KeyError:
            raise MalformedProjection(f"unknown column {name!r}") from None
        type_ = _type_instance(cs)
        if cs.origin is Origin.OWN:
            expr = spec.table.c[cs.column]
        elif cs.origin is Origin.LOG:
            expr = LOG_TABLE.c[cs.column]
        elif cs.origin is Origin.ACTOR:
            if not self._actor_join:
                raise MalformedProjection(f"{name!r} requires needs_actor_join()")
            expr = ACTOR_TABLE.c[cs.column]
        elif cs.origin is Origin.COMMENT:
            if not self._comment_join:
                raise MalformedProjection(f"{name!r} requires needs_comment_join()")
            expr = COMMENT_TABLE.c[cs.column]
        elif cs.origin is Origin.LITERAL:
            expr = literal(cs.literal, type_)
            if dialect_name == "postgresql":
                expr = cast(expr, type_)
        else:
            expr = typed_null(type_, dialect_name)
        return expr

    def _column(self, spec: SourceSpec, name: str, dialect_name: str) -> Label:
        return self._expression(spec, name, dialect_name).label(name)

    def _branch_columns(self, spec: SourceSpec, dialect_name: str) -> ColumnCollection:
        """Every column the branch could project, keyed like the union's columns."""
        return ColumnCollection(
            [(name, self._expression(spec, name, dialect_name)) for name in self._all_fields()]
        )

    def _from_clause(self, spec: SourceSpec):
        frm = spec.table
        if spec.source is EventSource.LOG_EVENT:
            frm = frm.join(LOG_TABLE, LOG_TABLE.c.log_id == spec.table.c[spec.reference_column])
        if self._actor_join:
            frm = frm.outerjoin(ACTOR_TABLE, ACTOR_TABLE.c.actor_id == spec.table.c[spec.actor_column])
        if self._comment_join:
            owner = LOG_TABLE if spec.comment_origin is Origin.LOG else spec.table
            frm = frm.outerjoin(COMMENT_TABLE, COMMENT_TABLE.c.comment_id == owner.c[spec.comment_column])
        return frm

    def _branch_order(self, source: EventSource, labels: Dict[str, Label]) -> List[Tuple[str, bool]]:
        if source in self._sub_order:
            return self._sub_order[source]
        # mirror the outer order so a per-branch limit keeps the right rows
        if self._order and all(name in labels for name, _ in self._order):
            return self._order
        return []

    def _branch_limit(self) -> Optional[int]:
        if self._sub_limit is not None:
            return self._sub_limit
        if self._order and self._limit is not None:
            return self._limit
        return None

    def _branch(self, source: EventSource, dialect_name: str) -> Select:
        spec = SOURCES[source]
        labels = {name: self._column(spec, name, dialect_name) for name in self._branch_fields(source)}
        stmt = select(*labels.values()).select_from(self._from_clause(spec))

        ts = spec.table.c[spec.timestamp_column]
        start, end = self._window
        if start is not None:
            stmt = stmt.where(ts >= start)
        if end is not None:
            stmt = stmt.where(ts <= end)
        if source in self._target_where:
            stmt = stmt.where(self._target_where[source])
        for criterion in self._sub_where[source]:
            stmt = stmt.where(criterion(spec) if callable(criterion) else criterion)
        if self._where:
            # outer conditions must filter before the branch is cut to its limit
            columns = self._branch_columns(spec, dialect_name)
            try:
                for criterion in self._where:
                    stmt = stmt.where(criterion(columns))
            except (AttributeError, KeyError) as e:
                raise MalformedProjection(f"outer condition uses an unknown column: {e}") from e

        if source in self._use_index:
            stmt = stmt.with_hint(spec.table, f"USE INDEX ({self._use_index[source]})", "mysql")

        order = self._branch_order(source, labels)
        limit = self._branch_limit()
        if order:
            stmt = stmt.order_by(*(labels[n].desc() if d else labels[n].asc() for n, d in order))
        if limit is not None:
            stmt = stmt.limit(limit)

        # SQLite rejects ORDER BY / LIMIT on a compound member
        if dialect_name == "sqlite" and (order or limit is not None):
            inner = stmt.subquery()
            stmt = select(*inner.c)
        return stmt

    # --- statement ------------------------------------------------------

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def statement(self, fields: Optional[Sequence[str]] = None) -> Select:
        """The complete SELECT over the aliased union, built fresh."""
        self._check_projection_counts()
        dialect_name = self._dialect_name()
        branches = [self._branch(source, dialect_name) for source in self.sources]
        if len(branches) == 1:
            union = branches[0].subquery(UNION_ALIAS)
        else:
            union = union_all(*branches).subquery(UNION_ALIAS)

        names = fields if fields is not None else self._fields
        try:
            columns = [union.c[n] for n in names] if names is not None else list(union.c)
            order = [union.c[n].desc() if d else union.c[n].asc() for n, d in self._order]
        except KeyError as e:
            raise MalformedProjection(f"column {e.args[0]!r} is not projected by the sub-queries") from None

        stmt = select(*columns)
        for criterion in self._where:
            stmt = stmt.where(criterion(union.c))
        if order:
            stmt = stmt.order_by(*order)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        return stmt

    def _is_empty(self) -> bool:
        return self._empty or self._limit == 0

    # --- terminal operations ----------------------------------------------

    async def fetch_all(self) -> List[Mapping[str, Any]]:
        if self._is_empty():
            return []
        result = await self.session.execute(self.statement())
        return list(result.mappings().all())

    async def fetch_row(self) -> Optional[Mapping[str, Any]]:
        if self._is_empty():
            return None
        result = await self.session.execute(self.statement())
        return result.mappings().first()

    async def fetch_field(self, name: str) -> Any:
        """Value of ``name`` in the first row, None when nothing matches."""
        if self._is_empty():
            return None
        result = await self.session.execute(self.statement(fields=[name]))
        return result.scalars().first()

    async def fetch_field_values(self, name: str) -> List[Any]:
        if self._is_empty():
            return []
        result = await self.session.execute(self.statement(fields=[name]))
        return list(result.scalars().all())

    async def fetch_row_count(self) -> int:
        """Matching rows after the limit is applied, i.e. min(limit, total)."""
        if self._is_empty():
            return 0
        counted = self.statement().subquery("counted")
        result = await self.session.execute(select(func.count()).select_from(counted))
        return int(result.scalar_one())

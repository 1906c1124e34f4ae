"""Static description of the three event logs and the common column set.

Every event source projects the same ordered list of columns
(:data:`COMMON_COLUMNS`). Columns a source does not store are emitted as
typed NULL placeholders so that a UNION of all three is type-consistent.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Type

from sqlalchemy import BigInteger, Integer, LargeBinary, SmallInteger, String, Table, Text
from sqlalchemy.types import DateTime, TypeEngine

from trailscope.db.models import Actor, ChangeEvent, Comment, LogEntry, LogEvent, PrivateEvent
from trailscope.errors import UnknownSource

# change type stored for rows that come from log-like sources
LOG_CHANGE_TYPE = 3


class EventSource(str, enum.Enum):
    CHANGE = "change"
    LOG_EVENT = "log_event"
    PRIVATE_EVENT = "private_event"

    @classmethod
    def parse(cls, value: "EventSource | str") -> "EventSource":
        try:
            return cls(value)
        except ValueError:
            raise UnknownSource(value) from None


# client hint reference types, stored in clienthint_map.chm_reference_type
REFERENCE_TYPE = {
    EventSource.CHANGE: 0,
    EventSource.LOG_EVENT: 1,
    EventSource.PRIVATE_EVENT: 2,
}


class Origin(str, enum.Enum):
    OWN = "own"          # column of the event table itself
    LOG = "log"          # log_entries, always joined for LOG_EVENT
    ACTOR = "actor"      # actors, only with needs_actor_join()
    COMMENT = "comment"  # comments, only with needs_comment_join()
    LITERAL = "literal"  # constant value
    NULL = "null"        # typed NULL placeholder


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type_: Type[TypeEngine]
    origin: Origin = Origin.OWN
    column: Optional[str] = None
    literal: object = None

    @property
    def source_present(self) -> bool:
        return self.origin is not Origin.NULL

    @property
    def join(self) -> Optional[Origin]:
        return self.origin if self.origin in (Origin.ACTOR, Origin.COMMENT) else None


def _null(name: str, type_: Type[TypeEngine]) -> ColumnSpec:
    return ColumnSpec(name, type_, Origin.NULL)


def _own(name: str, type_: Type[TypeEngine], column: str) -> ColumnSpec:
    return ColumnSpec(name, type_, Origin.OWN, column)


def _log(name: str, type_: Type[TypeEngine], column: str) -> ColumnSpec:
    return ColumnSpec(name, type_, Origin.LOG, column)


# Order matters: UNION matches columns by position.
COMMON_COLUMNS: Tuple[str, ...] = (
    "id",
    "source",
    "timestamp",
    "title",
    "page_id",
    "namespace",
    "actor",
    "ip",
    "ip_hex",
    "xff",
    "xff_hex",
    "agent",
    "minor",
    "actiontext",
    "this_oldid",
    "last_oldid",
    "type",
    "comment_id",
    "log_type",
    "log_action",
    "log_params",
    "log_id",
    "actor_user",
    "actor_name",
    "comment_text",
    "comment_data",
)

# columns that only exist through an optional join
JOINED_COLUMNS = {
    "actor_user": Origin.ACTOR,
    "actor_name": Origin.ACTOR,
    "comment_text": Origin.COMMENT,
    "comment_data": Origin.COMMENT,
}

_JOINED_SPECS = (
    ColumnSpec("actor_user", Integer, Origin.ACTOR, "actor_user"),
    ColumnSpec("actor_name", String, Origin.ACTOR, "actor_name"),
    ColumnSpec("comment_text", Text, Origin.COMMENT, "comment_text"),
    ColumnSpec("comment_data", Text, Origin.COMMENT, "comment_data"),
)


def _shared(prefix: str) -> Tuple[ColumnSpec, ...]:
    return (
        _own("timestamp", DateTime, f"{prefix}timestamp"),
        _own("actor", BigInteger, f"{prefix}actor"),
        _own("ip", String, f"{prefix}ip"),
        _own("ip_hex", String, f"{prefix}ip_hex"),
        _own("xff", String, f"{prefix}xff"),
        _own("xff_hex", String, f"{prefix}xff_hex"),
        _own("agent", String, f"{prefix}agent"),
    )


def _specs(*specs: ColumnSpec) -> Dict[str, ColumnSpec]:
    by_name = {s.name: s for s in specs}
    missing = set(COMMON_COLUMNS) - set(by_name)
    if missing:
        raise RuntimeError(f"column specs missing {sorted(missing)}")
    return {name: by_name[name] for name in COMMON_COLUMNS}


@dataclass(frozen=True)
class SourceSpec:
    source: EventSource
    table: Table
    prefix: str
    id_column: str
    timestamp_column: str
    # column holding the id that clienthint_map.chm_reference_id points at
    reference_column: str
    comment_column: str
    comment_origin: Origin
    columns: Dict[str, ColumnSpec] = field(repr=False)

    @property
    def actor_column(self) -> str:
        return f"{self.prefix}actor"

    @property
    def reference_type(self) -> int:
        return REFERENCE_TYPE[self.source]

    def index_name(self, forwarded_for: Optional[bool]) -> str:
        """Covering index for an actor (None), IP (False) or XFF (True) search."""
        if forwarded_for is None:
            return f"{self.prefix}actor_ip_time"
        return f"{self.prefix}{'xff' if forwarded_for else 'ip'}_hex_time"

    def hex_column(self, forwarded_for: bool) -> str:
        return f"{self.prefix}{'xff' if forwarded_for else 'ip'}_hex"


SOURCES: Dict[EventSource, SourceSpec] = {
    EventSource.CHANGE: SourceSpec(
        source=EventSource.CHANGE,
        table=ChangeEvent.__table__,
        prefix="ce_",
        id_column="ce_id",
        timestamp_column="ce_timestamp",
        reference_column="ce_this_oldid",
        comment_column="ce_comment_id",
        comment_origin=Origin.OWN,
        columns=_specs(
            _own("id", BigInteger, "ce_id"),
            ColumnSpec("source", String, Origin.LITERAL, literal=EventSource.CHANGE.value),
            _own("title", String, "ce_title"),
            _own("page_id", Integer, "ce_page_id"),
            _own("namespace", Integer, "ce_namespace"),
            *_shared("ce_"),
            _own("minor", SmallInteger, "ce_minor"),
            _own("actiontext", String, "ce_actiontext"),
            _own("this_oldid", Integer, "ce_this_oldid"),
            _own("last_oldid", Integer, "ce_last_oldid"),
            _own("type", SmallInteger, "ce_type"),
            _own("comment_id", BigInteger, "ce_comment_id"),
            _null("log_type", String),
            _null("log_action", String),
            _null("log_params", LargeBinary),
            _null("log_id", BigInteger),
            *_JOINED_SPECS,
        ),
    ),
    EventSource.LOG_EVENT: SourceSpec(
        source=EventSource.LOG_EVENT,
        table=LogEvent.__table__,
        prefix="le_",
        id_column="le_id",
        timestamp_column="le_timestamp",
        reference_column="le_log_id",
        comment_column="log_comment_id",
        comment_origin=Origin.LOG,
        columns=_specs(
            _own("id", BigInteger, "le_id"),
            ColumnSpec("source", String, Origin.LITERAL, literal=EventSource.LOG_EVENT.value),
            _log("title", String, "log_title"),
            _log("page_id", Integer, "log_page"),
            _log("namespace", Integer, "log_namespace"),
            *_shared("le_"),
            _null("minor", SmallInteger),
            _null("actiontext", String),
            _null("this_oldid", Integer),
            _null("last_oldid", Integer),
            ColumnSpec("type", SmallInteger, Origin.LITERAL, literal=LOG_CHANGE_TYPE),
            _log("comment_id", BigInteger, "log_comment_id"),
            _log("log_type", String, "log_type"),
            _log("log_action", String, "log_action"),
            _log("log_params", LargeBinary, "log_params"),
            _own("log_id", BigInteger, "le_log_id"),
            *_JOINED_SPECS,
        ),
    ),
    EventSource.PRIVATE_EVENT: SourceSpec(
        source=EventSource.PRIVATE_EVENT,
        table=PrivateEvent.__table__,
        prefix="pe_",
        id_column="pe_id",
        timestamp_column="pe_timestamp",
        reference_column="pe_id",
        comment_column="pe_comment_id",
        comment_origin=Origin.OWN,
        columns=_specs(
            _own("id", BigInteger, "pe_id"),
            ColumnSpec("source", String, Origin.LITERAL, literal=EventSource.PRIVATE_EVENT.value),
            _own("title", String, "pe_title"),
            _own("page_id", Integer, "pe_page"),
            _own("namespace", Integer, "pe_namespace"),
            *_shared("pe_"),
            _null("minor", SmallInteger),
            _null("actiontext", String),
            _null("this_oldid", Integer),
            _null("last_oldid", Integer),
            ColumnSpec("type", SmallInteger, Origin.LITERAL, literal=LOG_CHANGE_TYPE),
            _own("comment_id", BigInteger, "pe_comment_id"),
            _own("log_type", String, "pe_log_type"),
            _own("log_action", String, "pe_log_action"),
            _own("log_params", LargeBinary, "pe_params"),
            _null("log_id", BigInteger),
            *_JOINED_SPECS,
        ),
    ),
}

ACTOR_TABLE: Table = Actor.__table__
COMMENT_TABLE: Table = Comment.__table__
LOG_TABLE: Table = LogEntry.__table__


def source_spec(source: "EventSource | str") -> SourceSpec:
    return SOURCES[EventSource.parse(source)]

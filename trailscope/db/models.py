# trailscope/db/models.py
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    PrimaryKeyConstraint,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT autoincrement only works on SQLite as INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer(), "sqlite")

AGENT_MAX_LENGTH = 255


class Base(DeclarativeBase):
    pass


class Actor(Base):
    __tablename__ = "actors"

    actor_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    # NULL for anonymous (IP-only) actors
    actor_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, unique=True)
    actor_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)


class Comment(Base):
    __tablename__ = "comments"

    comment_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    comment_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    comment_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class LogEntry(Base):
    """Structured log entry that a LogEvent row points at."""

    __tablename__ = "log_entries"

    log_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    log_type: Mapped[str] = mapped_column(String(32), nullable=False)
    log_action: Mapped[str] = mapped_column(String(32), nullable=False)
    log_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    log_actor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_namespace: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    log_title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    log_page: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    log_comment_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    log_params: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    log_deleted: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)


class ChangeEvent(Base):
    __tablename__ = "change_events"

    ce_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    ce_page_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ce_namespace: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ce_title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ce_actor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ce_actiontext: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ce_comment_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ce_minor: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    ce_this_oldid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ce_last_oldid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ce_type: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    ce_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ce_ip: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ce_ip_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ce_xff: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ce_xff_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ce_agent: Mapped[Optional[str]] = mapped_column(String(AGENT_MAX_LENGTH), nullable=True)

    __table_args__ = (
        Index("ce_actor_ip_time", "ce_actor", "ce_ip", "ce_timestamp"),
        Index("ce_ip_hex_time", "ce_ip_hex", "ce_timestamp"),
        Index("ce_xff_hex_time", "ce_xff_hex", "ce_timestamp"),
        Index("ce_timestamp", "ce_timestamp"),
        # client hint references point at this_oldid
        Index("ce_this_oldid", "ce_this_oldid"),
    )


class LogEvent(Base):
    __tablename__ = "log_events"

    le_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    le_log_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    le_actor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    le_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    le_ip: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    le_ip_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    le_xff: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    le_xff_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    le_agent: Mapped[Optional[str]] = mapped_column(String(AGENT_MAX_LENGTH), nullable=True)

    __table_args__ = (
        Index("le_actor_ip_time", "le_actor", "le_ip", "le_timestamp"),
        Index("le_ip_hex_time", "le_ip_hex", "le_timestamp"),
        Index("le_xff_hex_time", "le_xff_hex", "le_timestamp"),
        Index("le_timestamp", "le_timestamp"),
    )


class PrivateEvent(Base):
    __tablename__ = "private_events"

    pe_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    pe_namespace: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pe_title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    pe_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pe_actor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pe_log_type: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    pe_log_action: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    pe_params: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    pe_comment_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pe_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pe_ip: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pe_ip_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pe_xff: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pe_xff_hex: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pe_agent: Mapped[Optional[str]] = mapped_column(String(AGENT_MAX_LENGTH), nullable=True)

    __table_args__ = (
        Index("pe_actor_ip_time", "pe_actor", "pe_ip", "pe_timestamp"),
        Index("pe_ip_hex_time", "pe_ip_hex", "pe_timestamp"),
        Index("pe_xff_hex_time", "pe_xff_hex", "pe_timestamp"),
        Index("pe_timestamp", "pe_timestamp"),
    )


# --- client hints -----------------------------------------------------------

class ClientHintValue(Base):
    """Deduplicated browser client-hint name/value pair, shared by many events."""

    __tablename__ = "clienthint_values"

    chv_id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    chv_name: Mapped[str] = mapped_column(String(32), nullable=False)
    chv_value: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (UniqueConstraint("chv_name", "chv_value", name="chv_name_value"),)


class ClientHintMap(Base):
    __tablename__ = "clienthint_map"

    chm_value_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # 0 = change_events, 1 = log_events, 2 = private_events
    chm_reference_type: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    chm_reference_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("chm_reference_type", "chm_reference_id", "chm_value_id"),
        Index("chm_value_id", "chm_value_id"),
    )


# --- central index (shared by every domain) ---------------------------------

class DomainMap(Base):
    __tablename__ = "domain_map"

    dm_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dm_domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)


class CentralActorActivity(Base):
    __tablename__ = "central_actor_activity"

    caa_central_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    caa_domain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    caa_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("caa_central_id", "caa_domain_id"),
        Index("caa_central_id_timestamp", "caa_central_id", "caa_timestamp"),
        Index("caa_domain_timestamp", "caa_domain_id", "caa_timestamp"),
    )


class CentralTempActivity(Base):
    __tablename__ = "central_temp_activity"

    cta_ip_hex: Mapped[str] = mapped_column(String(255), nullable=False)
    cta_domain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    cta_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("cta_ip_hex", "cta_domain_id"),
        Index("cta_domain_timestamp", "cta_domain_id", "cta_timestamp"),
    )


class JobLock(Base):
    """Lock rows for backends without native advisory locks."""

    __tablename__ = "job_locks"

    jl_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    jl_owner: Mapped[str] = mapped_column(String(64), nullable=False)
    jl_expires: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

# trailscope/repositories/events.py
"""Write helpers for the event logs.

These fill in the derived columns (hex range keys, capped user agent) the
query and purge paths rely on. Callers own the transaction.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from trailscope.db.models import (
    AGENT_MAX_LENGTH,
    Actor,
    ChangeEvent,
    Comment,
    LogEntry,
    LogEvent,
    PrivateEvent,
)
from trailscope.security import ip_utils


def hex_or_none(ip: Optional[str]) -> Optional[str]:
    sanitized = ip_utils.sanitize_ip(ip)
    return ip_utils.to_hex(sanitized) if sanitized else None


def client_ip_from_xff(xff: Optional[str]) -> Optional[str]:
    """First valid address in an X-Forwarded-For list, as the client sent it."""
    if not xff:
        return None
    for part in xff.split(","):
        ip = ip_utils.sanitize_ip(part.strip())
        if ip:
            return ip
    return None


def _agent(agent: Optional[str]) -> Optional[str]:
    return agent[:AGENT_MAX_LENGTH] if agent else agent


def _addresses(prefix: str, ip: Optional[str], xff: Optional[str]) -> dict:
    return {
        f"{prefix}ip": ip_utils.sanitize_ip(ip) or ip,
        f"{prefix}ip_hex": hex_or_none(ip),
        f"{prefix}xff": xff,
        f"{prefix}xff_hex": hex_or_none(client_ip_from_xff(xff)),
    }


async def ensure_actor(session: AsyncSession, *, name: str, user_id: Optional[int] = None) -> int:
    existing = (await session.execute(select(Actor.actor_id).where(Actor.actor_name == name))).scalar_one_or_none()
    if existing is not None:
        return existing
    res = await session.execute(
        insert(Actor.__table__).values(actor_name=name, actor_user=user_id).returning(Actor.__table__.c.actor_id)
    )
    return res.scalar_one()


async def insert_comment(session: AsyncSession, *, text: str, data: Optional[str] = None) -> int:
    res = await session.execute(
        insert(Comment.__table__).values(comment_text=text, comment_data=data).returning(Comment.__table__.c.comment_id)
    )
    return res.scalar_one()


async def insert_log_entry(
    session: AsyncSession,
    *,
    log_type: str,
    log_action: str,
    actor_id: int,
    timestamp: datetime,
    namespace: int = 0,
    title: str = "",
    page_id: Optional[int] = None,
    comment_id: Optional[int] = None,
    params: Optional[bytes] = None,
) -> int:
    stmt = (
        insert(LogEntry.__table__)
        .values(
            log_type=log_type,
            log_action=log_action,
            log_timestamp=timestamp,
            log_actor=actor_id,
            log_namespace=namespace,
            log_title=title,
            log_page=page_id,
            log_comment_id=comment_id,
            log_params=params,
        )
        .returning(LogEntry.__table__.c.log_id)
    )
    return (await session.execute(stmt)).scalar_one()


async def insert_change(
    session: AsyncSession,
    *,
    actor_id: int,
    timestamp: datetime,
    ip: Optional[str],
    xff: Optional[str] = None,
    agent: Optional[str] = None,
    page_id: int = 0,
    namespace: int = 0,
    title: str = "",
    actiontext: str = "",
    comment_id: int = 0,
    minor: bool = False,
    this_oldid: int = 0,
    last_oldid: int = 0,
    change_type: int = 0,
) -> int:
    stmt = (
        insert(ChangeEvent.__table__)
        .values(
            ce_actor=actor_id,
            ce_timestamp=timestamp,
            ce_agent=_agent(agent),
            ce_page_id=page_id,
            ce_namespace=namespace,
            ce_title=title,
            ce_actiontext=actiontext,
            ce_comment_id=comment_id,
            ce_minor=int(minor),
            ce_this_oldid=this_oldid,
            ce_last_oldid=last_oldid,
            ce_type=change_type,
            **_addresses("ce_", ip, xff),
        )
        .returning(ChangeEvent.__table__.c.ce_id)
    )
    return (await session.execute(stmt)).scalar_one()


async def insert_log_event(
    session: AsyncSession,
    *,
    log_id: int,
    actor_id: int,
    timestamp: datetime,
    ip: Optional[str],
    xff: Optional[str] = None,
    agent: Optional[str] = None,
) -> int:
    stmt = (
        insert(LogEvent.__table__)
        .values(
            le_log_id=log_id,
            le_actor=actor_id,
            le_timestamp=timestamp,
            le_agent=_agent(agent),
            **_addresses("le_", ip, xff),
        )
        .returning(LogEvent.__table__.c.le_id)
    )
    return (await session.execute(stmt)).scalar_one()


async def insert_private_event(
    session: AsyncSession,
    *,
    actor_id: int,
    timestamp: datetime,
    ip: Optional[str],
    log_type: str,
    log_action: str,
    xff: Optional[str] = None,
    agent: Optional[str] = None,
    namespace: int = 0,
    title: str = "",
    page_id: int = 0,
    params: Optional[bytes] = None,
    comment_id: int = 0,
) -> int:
    stmt = (
        insert(PrivateEvent.__table__)
        .values(
            pe_actor=actor_id,
            pe_timestamp=timestamp,
            pe_agent=_agent(agent),
            pe_log_type=log_type,
            pe_log_action=log_action,
            pe_namespace=namespace,
            pe_title=title,
            pe_page=page_id,
            pe_params=params,
            pe_comment_id=comment_id,
            **_addresses("pe_", ip, xff),
        )
        .returning(PrivateEvent.__table__.c.pe_id)
    )
    return (await session.execute(stmt)).scalar_one()

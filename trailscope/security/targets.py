"""Classify a free-text investigation target as an IP, an IP range or an actor."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trailscope.core.settings import Settings
from trailscope.db.models import Actor
from trailscope.errors import InvalidAddress, InvalidTarget
from trailscope.security import ip_utils

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CidrLimit:
    """Least specific prefix length accepted per address family."""

    ipv4: int = 16
    ipv6: int = 19

    @classmethod
    def from_settings(cls, settings: Settings) -> "CidrLimit":
        return cls(ipv4=settings.CIDR_LIMIT_IPV4, ipv6=settings.CIDR_LIMIT_IPV6)

    def for_version(self, version: int) -> int:
        return self.ipv4 if version == 4 else self.ipv6


@dataclass(frozen=True)
class SingleIP:
    target: str
    key: str


@dataclass(frozen=True)
class IPRange:
    target: str
    start: str
    end: str


@dataclass(frozen=True)
class ActorTarget:
    target: str
    actor_id: int


@dataclass(frozen=True)
class Invalid:
    target: str
    reason: str

    def as_error(self) -> InvalidTarget:
        return InvalidTarget(self.target, self.reason)


Classification = Union[SingleIP, IPRange, ActorTarget, Invalid]


class IdentityLookup(Protocol):
    async def actor_id_for_name(self, name: str) -> Optional[int]: ...


class SqlIdentityLookup:
    """Resolves actor names against the ``actors`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def actor_id_for_name(self, name: str) -> Optional[int]:
        stmt = select(Actor.actor_id).where(Actor.actor_name == name)
        return (await self.session.execute(stmt)).scalar_one_or_none()


def normalize_name(target: str) -> str:
    # user names are stored with a capital first letter and spaces, not underscores
    name = " ".join(target.replace("_", " ").split())
    return name[:1].upper() + name[1:]


class TargetResolver:
    def __init__(self, cidr_limit: CidrLimit, identity_lookup: IdentityLookup):
        self.cidr_limit = cidr_limit
        self.identity_lookup = identity_lookup

    def classify_ip(self, target: str) -> Optional[Classification]:
        """
        IP half of :meth:`resolve`. Returns None when the target does not look
        like an address at all (so it may be an actor name).
        """
        target = target.strip()
        version = ip_utils.ip_version(target)
        if version is None:
            if "/" in target and ip_utils.is_valid_ip(target.split("/", 1)[0]):
                return Invalid(target, "malformed CIDR range")
            return None
        try:
            if ip_utils.is_valid_range(target):
                prefix = ip_utils.prefix_length(target)
                limit = self.cidr_limit.for_version(version)
                if prefix < limit:
                    return Invalid(target, f"range is broader than /{limit}")
                start, end = ip_utils.parse_range(target)
                if start == end:
                    return SingleIP(target, start)
                return IPRange(target, start, end)
            return SingleIP(target, ip_utils.to_hex(target))
        except InvalidAddress as e:
            return Invalid(target, str(e))

    async def resolve(self, target: str) -> Classification:
        target = (target or "").strip()
        if not target:
            return Invalid(target, "empty target")
        classified = self.classify_ip(target)
        if classified is not None:
            return classified
        actor_id = await self.identity_lookup.actor_id_for_name(normalize_name(target))
        if actor_id is None:
            return Invalid(target, "no such actor")
        return ActorTarget(target, actor_id)

    async def resolve_many(self, targets: Iterable[str]) -> List[Classification]:
        results = []
        for target in targets:
            result = await self.resolve(target)
            if isinstance(result, Invalid):
                logger.debug("skipping target %r: %s", result.target, result.reason)
            results.append(result)
        return results

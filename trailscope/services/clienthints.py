"""Browser client hints attached to events.

Hint name/value pairs are stored once in ``clienthint_values`` and shared
by every event that sent them; ``clienthint_map`` links an event
(reference type + reference id) to its values. A value may only be
deleted once no map row points at it any more.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from trailscope.db.models import ClientHintMap, ClientHintValue
from trailscope.errors import UnknownSource
from trailscope.query.columns import REFERENCE_TYPE, SOURCES, EventSource
from trailscope.repositories.sql import insert_ignore

logger = logging.getLogger(__name__)

_TYPE_TO_SOURCE = {v: k for k, v in REFERENCE_TYPE.items()}


def reference_type_for(source: Union[EventSource, str, int]) -> int:
    if isinstance(source, int) and not isinstance(source, bool):
        if source not in _TYPE_TO_SOURCE:
            raise UnknownSource(source)
        return source
    return REFERENCE_TYPE[EventSource.parse(source)]


class BrandVersion(BaseModel):
    brand: str
    version: str


class ClientHintsData(BaseModel):
    """Client hints as reported by the browser's User-Agent Client Hints API."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    architecture: Optional[str] = None
    bitness: Optional[str] = None
    brands: Optional[List[BrandVersion]] = None
    form_factor: Optional[str] = Field(default=None, alias="formFactor")
    full_version_list: Optional[List[BrandVersion]] = Field(default=None, alias="fullVersionList")
    mobile: Optional[bool] = None
    model: Optional[str] = None
    platform: Optional[str] = None
    platform_version: Optional[str] = Field(default=None, alias="platformVersion")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    wow64: Optional[bool] = Field(default=None, alias="woW64")

    def to_database_rows(self) -> List[Tuple[str, str]]:
        """
        (name, value) pairs, one per scalar hint and one per brand entry.
        Empty values are dropped, booleans become "1"/"0", duplicates are
        removed while keeping order.
        """
        rows: List[Tuple[str, str]] = []
        for name, value in self.model_dump(by_alias=True).items():
            if isinstance(value, list):
                rows.extend((name, f"{item['brand']} {item['version']}") for item in value)
                continue
            if value is None or value == "":
                continue
            if isinstance(value, bool):
                value = "1" if value else "0"
            rows.append((name, str(value)))
        return list(dict.fromkeys(rows))


class ClientHintsReferenceIds:
    """Event ids, grouped by reference type, whose hint mappings should go."""

    def __init__(self):
        self._ids: Dict[int, Set[int]] = {t: set() for t in _TYPE_TO_SOURCE}

    def add(self, reference_ids: Iterable[int], source: Union[EventSource, str, int]) -> None:
        self._ids[reference_type_for(source)].update(int(i) for i in reference_ids if i)

    def get(self, source: Union[EventSource, str, int]) -> Set[int]:
        return set(self._ids[reference_type_for(source)])

    def items(self):
        return ((t, set(ids)) for t, ids in self._ids.items())

    def __len__(self) -> int:
        return sum(len(ids) for ids in self._ids.values())

    def __repr__(self) -> str:
        return f"ClientHintsReferenceIds({ {t: sorted(ids) for t, ids in self._ids.items()} })"


class ClientHintsManager:
    def __init__(self, session: AsyncSession):
        self.session = session

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    async def insert_client_hint_values(
        self, data: ClientHintsData, reference_id: int, source: Union[EventSource, str, int]
    ) -> bool:
        """
        Store hints for one event. Returns False, writing nothing, if the
        event already has hint mappings.
        """
        rows = data.to_database_rows()
        if not rows:
            return True
        reference_type = reference_type_for(source)

        existing = (
            await self.session.execute(
                select(func.count())
                .select_from(ClientHintMap)
                .where(
                    ClientHintMap.chm_reference_type == reference_type,
                    ClientHintMap.chm_reference_id == reference_id,
                )
            )
        ).scalar_one()
        if existing:
            logger.warning("client hint mappings already exist for type %s id %s", reference_type, reference_id)
            return False

        await self.session.execute(
            insert_ignore(self.dialect_name, ClientHintValue.__table__),
            [{"chv_name": name, "chv_value": value} for name, value in rows],
        )
        matches = or_(*(and_(ClientHintValue.chv_name == n, ClientHintValue.chv_value == v) for n, v in rows))
        value_ids = list((await self.session.execute(select(ClientHintValue.chv_id).where(matches))).scalars())
        if len(value_ids) != len(rows):
            logger.warning("looked up %d of %d client hint values", len(value_ids), len(rows))
        if value_ids:
            await self.session.execute(
                insert_ignore(self.dialect_name, ClientHintMap.__table__),
                [
                    {"chm_value_id": value_id, "chm_reference_type": reference_type, "chm_reference_id": reference_id}
                    for value_id in value_ids
                ],
            )
        return True

    async def delete_mapping_rows(self, reference_ids: ClientHintsReferenceIds) -> int:
        deleted = 0
        for reference_type, ids in reference_ids.items():
            if not ids:
                continue
            res = await self.session.execute(
                delete(ClientHintMap).where(
                    ClientHintMap.chm_reference_type == reference_type,
                    ClientHintMap.chm_reference_id.in_(sorted(ids)),
                )
            )
            deleted += res.rowcount or 0
        if deleted:
            logger.debug("deleted %d client hint mapping rows", deleted)
        else:
            logger.info("no client hint mapping rows deleted")
        return deleted

    async def delete_orphaned_values(self, max_rows: int = 500) -> int:
        """Delete up to ``max_rows`` values that no map row references."""
        referenced = exists().where(ClientHintMap.chm_value_id == ClientHintValue.chv_id)
        orphans = list(
            (
                await self.session.execute(
                    select(ClientHintValue.chv_id).where(~referenced).order_by(ClientHintValue.chv_id).limit(max_rows)
                )
            ).scalars()
        )
        if not orphans:
            return 0
        # re-check at delete time: a concurrent insert may have mapped one of them meanwhile
        res = await self.session.execute(
            delete(ClientHintValue).where(ClientHintValue.chv_id.in_(orphans), ~referenced)
        )
        deleted = res.rowcount or 0
        logger.debug("deleted %d orphaned client hint values", deleted)
        return deleted

    async def _event_exists(self, reference_type: int, reference_id: int) -> bool:
        spec = SOURCES[_TYPE_TO_SOURCE[reference_type]]
        column = spec.table.c[spec.reference_column]
        stmt = select(column).where(column == reference_id).limit(1)
        return (await self.session.execute(stmt)).first() is not None

    async def delete_orphaned_map_rows(self, scan_limit: int = 100) -> int:
        """
        Delete map rows whose event is gone although the normal purge missed
        them. Scans the oldest ``scan_limit`` references of each type and stops
        at the first one that still has its event, since newer references
        are expected to be live.
        """
        deleted = 0
        for reference_type in _TYPE_TO_SOURCE:
            candidates = (
                await self.session.execute(
                    select(ClientHintMap.chm_reference_id)
                    .where(ClientHintMap.chm_reference_type == reference_type)
                    .group_by(ClientHintMap.chm_reference_id)
                    .order_by(ClientHintMap.chm_reference_id)
                    .limit(scan_limit)
                )
            ).scalars()
            for reference_id in list(candidates):
                if await self._event_exists(reference_type, reference_id):
                    break
                res = await self.session.execute(
                    delete(ClientHintMap).where(
                        ClientHintMap.chm_reference_type == reference_type,
                        ClientHintMap.chm_reference_id == reference_id,
                    )
                )
                deleted += res.rowcount or 0
        if deleted:
            logger.info("deleted %d orphaned client hint mapping rows", deleted)
        return deleted

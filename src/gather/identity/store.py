"""Durable (platform_user_id -> canonical_id) mapping.

Every write is committed on its own; callers never get a multi-row
transaction from this store.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gather.db.base import utcnow
from gather.db.models import AgentAccount, Identity
from gather.db.upsert import insert_ignore
from gather.identity.platforms import Platform

logger = structlog.get_logger()


class IdentityStore:
    """Identity rows keyed by platform user id."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, platform_user_id: str) -> Identity | None:
        result = await self.db.execute(
            select(Identity)
            .where(Identity.platform_user_id == platform_user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def canonical_of(self, platform_user_id: str) -> str | None:
        result = await self.db.execute(
            select(Identity.canonical_id).where(Identity.platform_user_id == platform_user_id)
        )
        return result.scalar_one_or_none()

    async def find_by_external_auth_id(self, external_auth_id: str) -> list[Identity]:
        """Identities sharing an external auth id, oldest first."""
        result = await self.db.execute(
            select(Identity)
            .execution_options(populate_existing=True)
            .where(Identity.external_auth_id == external_auth_id)
            .order_by(Identity.id.asc())
        )
        return list(result.scalars().all())

    async def members(self, canonical_id: str) -> list[Identity]:
        result = await self.db.execute(
            select(Identity)
            .execution_options(populate_existing=True)
            .where(Identity.canonical_id == canonical_id)
            .order_by(Identity.id.asc())
        )
        return list(result.scalars().all())

    async def linked_ids(self, canonical_id: str) -> list[str]:
        result = await self.db.execute(
            select(Identity.platform_user_id)
            .where(Identity.canonical_id == canonical_id)
            .order_by(Identity.id.asc())
        )
        return list(result.scalars().all())

    async def insert(
        self,
        platform: Platform,
        platform_user_id: str,
        canonical_id: str,
        display_name: str | None = None,
        external_auth_id: str | None = None,
    ) -> Identity:
        """Insert an identity row. A concurrent insert of the same id wins; its row is returned."""
        now = utcnow()
        await insert_ignore(
            self.db,
            Identity,
            {
                "platform": platform.value,
                "platform_user_id": platform_user_id,
                "canonical_id": canonical_id,
                "display_name": display_name,
                "external_auth_id": external_auth_id,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["platform_user_id"],
        )
        await self.db.commit()
        row = await self.get(platform_user_id)
        if row is None:
            msg = f"identity insert for {platform_user_id} was not persisted"
            raise RuntimeError(msg)
        return row

    async def update_fields(
        self,
        platform_user_id: str,
        *,
        display_name: str | None = None,
        external_auth_id: str | None = None,
    ) -> None:
        """Backfill display name and/or external auth id on one row."""
        values: dict[str, object] = {}
        if display_name:
            values["display_name"] = display_name
        if external_auth_id:
            values["external_auth_id"] = external_auth_id
        if not values:
            return
        values["updated_at"] = utcnow()
        await self.db.execute(
            update(Identity)
            .where(Identity.platform_user_id == platform_user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def repoint_group(self, old_canonical_id: str, canonical_id: str) -> int:
        """Point every member of ``old_canonical_id`` at ``canonical_id``.

        An agent owned by the displaced group moves with it. When both groups
        already own one, the surviving canonical id keeps its own agent and the
        displaced one stays under ``old_canonical_id``.
        """
        if old_canonical_id == canonical_id:
            return 0
        now = utcnow()
        result = await self.db.execute(
            update(Identity)
            .where(Identity.canonical_id == old_canonical_id)
            .values(canonical_id=canonical_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._move_agent(old_canonical_id, canonical_id, now)
        await self.db.commit()
        return int(result.rowcount or 0)

    async def _move_agent(self, old_canonical_id: str, canonical_id: str, now: datetime) -> None:
        owners = await self.db.execute(
            select(AgentAccount.owner_identity, AgentAccount.slot)
            .where(AgentAccount.owner_identity.in_([old_canonical_id, canonical_id]))
        )
        slots = {owner: slot for owner, slot in owners.all()}
        if old_canonical_id not in slots:
            return
        if canonical_id in slots:
            logger.warning(
                "agent_merge_conflict",
                canonical_id=canonical_id,
                kept_slot=slots[canonical_id],
                displaced_canonical_id=old_canonical_id,
                displaced_slot=slots[old_canonical_id],
            )
            return
        await self.db.execute(
            update(AgentAccount)
            .where(AgentAccount.owner_identity == old_canonical_id)
            .values(owner_identity=canonical_id, version=AgentAccount.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("agent_owner_moved", slot=slots[old_canonical_id], canonical_id=canonical_id)

    async def split_external_auth_ids(self, limit: int = 500) -> list[str]:
        """External auth ids whose identities point at more than one canonical id."""
        result = await self.db.execute(
            select(Identity.external_auth_id)
            .where(Identity.external_auth_id.is_not(None))
            .group_by(Identity.external_auth_id)
            .having(func.count(func.distinct(Identity.canonical_id)) > 1)
            .limit(limit)
        )
        return [eid for eid in result.scalars().all() if eid]

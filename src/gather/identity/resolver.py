"""Canonical identity resolution and cross-platform merging.

Writes happen one identity at a time. Two first logins of the same person
on different platforms can race and leave two canonical ids; ``merge_all``
with the full linkage record (or the reconciliation job) converges them.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from gather.errors import DependencyUnavailable, NotFoundError
from gather.identity.platforms import Platform, detect_platform
from gather.identity.provider import LinkageProvider, LinkageRecord, LinkedAccount
from gather.identity.store import IdentityStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class ResolveHints:
    external_auth_id: str | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class MergeResult:
    canonical_id: str
    platform_user_ids: list[str]


class IdentityResolver:
    """Resolves platform user ids to canonical ids, minting and merging as needed."""

    def __init__(self, db: AsyncSession, provider: LinkageProvider | None = None) -> None:
        self.store = IdentityStore(db)
        self.provider = provider

    async def resolve(self, platform_user_id: str, hints: ResolveHints | None = None) -> str:
        """Canonical id for ``platform_user_id``, creating the identity row on first sight."""
        hints = hints or ResolveHints()
        existing = await self.store.get(platform_user_id)
        if existing is not None:
            await self.store.update_fields(
                platform_user_id,
                display_name=hints.display_name if not existing.display_name else None,
                external_auth_id=hints.external_auth_id if not existing.external_auth_id else None,
            )
            return existing.canonical_id

        platform = detect_platform(platform_user_id)
        canonical_id = platform_user_id
        if hints.external_auth_id:
            siblings = await self.store.find_by_external_auth_id(hints.external_auth_id)
            if siblings:
                canonical_id = siblings[0].canonical_id

        row = await self.store.insert(
            platform,
            platform_user_id,
            canonical_id,
            display_name=hints.display_name,
            external_auth_id=hints.external_auth_id,
        )
        if row.canonical_id != platform_user_id:
            logger.info("identity_merged", platform_user_id=platform_user_id, canonical_id=row.canonical_id)
        else:
            logger.info("identity_created", platform_user_id=platform_user_id)
        return row.canonical_id

    async def merge_all(self, external_auth_id: str, linkage: LinkageRecord | None = None) -> MergeResult:
        """Bring every account linked to ``external_auth_id`` under one canonical id.

        The record comes from the linkage provider when not supplied; without a
        provider the locally known rows for the external id are used. The
        canonical id is the first pre-existing one among the record's accounts,
        or the first account's own id when none exists yet.
        """
        accounts = list((await self.linkage_for(external_auth_id, linkage)).accounts)
        puids = _dedupe([a.platform_user_id for a in accounts])
        canonical_id = None
        for puid in puids:
            canonical_id = await self.store.canonical_of(puid)
            if canonical_id is not None:
                break
        if canonical_id is None:
            canonical_id = puids[0]

        repointed = 0
        for account in accounts:
            puid = account.platform_user_id
            row = await self.store.get(puid)
            if row is None:
                row = await self.store.insert(
                    account.platform,
                    puid,
                    canonical_id,
                    display_name=account.display_name,
                    external_auth_id=external_auth_id,
                )
            if row.canonical_id != canonical_id:
                # Moves the whole displaced group, not just this account.
                repointed += await self.store.repoint_group(row.canonical_id, canonical_id)
            await self.store.update_fields(
                puid,
                display_name=account.display_name if not row.display_name else None,
                external_auth_id=external_auth_id if row.external_auth_id != external_auth_id else None,
            )

        logger.info(
            "identity_merged",
            external_auth_id=external_auth_id,
            canonical_id=canonical_id,
            accounts=len(puids),
            repointed=repointed,
        )
        return MergeResult(canonical_id=canonical_id, platform_user_ids=puids)

    async def linkage_for(self, external_auth_id: str, linkage: LinkageRecord | None = None) -> LinkageRecord:
        """The provider record for ``external_auth_id`` plus locally known rows. Read-only."""
        if linkage is None:
            linkage = await self._fetch_linkage(external_auth_id)

        accounts = list(linkage.accounts) if linkage is not None else []
        seen = {a.platform_user_id for a in accounts}
        for row in await self.store.find_by_external_auth_id(external_auth_id):
            if row.platform_user_id not in seen:
                accounts.append(LinkedAccount(platform=Platform(row.platform), native_id=_native(row.platform_user_id)))
                seen.add(row.platform_user_id)
        if not accounts:
            msg = f"No accounts linked to {external_auth_id}"
            raise NotFoundError(msg)
        return LinkageRecord(external_auth_id=external_auth_id, accounts=tuple(accounts))

    async def linked_ids(self, canonical_id: str) -> list[str]:
        return await self.store.linked_ids(canonical_id)

    async def account_flags(self, canonical_id: str) -> dict[str, bool]:
        """``has_<platform>`` flags for every platform."""
        platforms = {detect_platform(puid) for puid in await self.store.linked_ids(canonical_id)}
        return {f"has_{p.value}": p in platforms for p in Platform}

    async def reconcile(self, limit: int = 500) -> int:
        """Re-merge every external auth id whose identities are split across canonical ids."""
        merged = 0
        for external_auth_id in await self.store.split_external_auth_ids(limit=limit):
            try:
                linkage = await self._fetch_linkage(external_auth_id)
            except DependencyUnavailable:
                linkage = None
            await self.merge_all(external_auth_id, linkage or LinkageRecord(external_auth_id=external_auth_id))
            merged += 1
        if merged:
            logger.info("identities_reconciled", count=merged)
        return merged

    async def _fetch_linkage(self, external_auth_id: str) -> LinkageRecord | None:
        if self.provider is None:
            return None
        return await self.provider.get_linkage(external_auth_id)


def _native(platform_user_id: str) -> str:
    _, sep, native = platform_user_id.partition("_")
    return native if sep else platform_user_id


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))

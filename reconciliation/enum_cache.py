"""
Enum Resolution Cache - maps (category, raw text) to enum catalog ids.

Unknown values are created on first sight. Creation tolerates concurrent
writers: a unique-constraint violation is answered by re-fetching the entry
another writer just created.
"""

import asyncio
from typing import Dict, Iterable, Optional, Tuple, Any
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from models.enum_catalog import EnumCatalogEntry
from models.base import EnumCategory
from reconciliation.normalizer import RowNormalizer, display_label
from core.config import settings
from core.exceptions import EnumResolutionError
import logging

logger = logging.getLogger(__name__)

EnumKey = Tuple[EnumCategory, str]


def canonical_token(category: EnumCategory, raw_value: Any) -> Optional[str]:
    """Normalize a raw cell for the given category"""
    if category == EnumCategory.INSTALLATION_STATUS:
        return RowNormalizer.normalize_installation_status(raw_value)
    return RowNormalizer.normalize_enum(raw_value)


class EnumCache:
    """
    Race-tolerant find-or-create cache over the enum catalog.

    Each creation runs in its own short session, never inside a
    reconciliation transaction. Callers resolve every value they need with
    resolve_many() first, then read ids synchronously with get().
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        concurrency: Optional[int] = None
    ):
        self.session_maker = session_maker
        concurrency = concurrency or settings.ENUM_RESOLVE_CONCURRENCY
        bind = session_maker.kw.get("bind")
        if bind is not None and bind.dialect.name == "sqlite":
            # SQLite allows a single writer at a time
            concurrency = 1
        self._semaphore = asyncio.Semaphore(concurrency)
        self._cache: Dict[EnumKey, Optional[int]] = {}
        self._inflight: Dict[EnumKey, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Catalog store
    # ------------------------------------------------------------------

    @staticmethod
    async def find_entry(
        session: AsyncSession,
        category: EnumCategory,
        value: str
    ) -> Optional[EnumCatalogEntry]:
        result = await session.execute(
            select(EnumCatalogEntry).where(
                EnumCatalogEntry.category == category,
                EnumCatalogEntry.value == value
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def create_entry(
        session: AsyncSession,
        category: EnumCategory,
        value: str,
        label: str
    ) -> EnumCatalogEntry:
        entry = EnumCatalogEntry(
            category=category,
            value=value,
            display_label=label,
            active=True
        )
        session.add(entry)
        await session.flush()
        return entry

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get(self, category: EnumCategory, raw_value: Any) -> Optional[int]:
        """Cached id of an already resolved value (None if unknown)"""
        token = canonical_token(category, raw_value)
        if token is None:
            return None
        return self._cache.get((category, token))

    async def resolve(
        self,
        category: EnumCategory,
        raw_value: Any,
        label: Optional[str] = None
    ) -> Optional[int]:
        """
        Resolve a raw value to its catalog id, creating the entry if needed.

        Returns None for blank values and the '-' sentinel.
        """
        token = canonical_token(category, raw_value)
        if token is None:
            return None

        key = (category, token)
        if key in self._cache:
            return self._cache[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._find_or_create(category, token, label))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))

        entry_id = await task
        self._cache[key] = entry_id
        return entry_id

    async def resolve_many(
        self,
        pairs: Iterable[Tuple[EnumCategory, Any]]
    ) -> Dict[EnumKey, Optional[int]]:
        """
        Resolve all pairs concurrently and wait for every one of them.

        A pair that fails is logged and cached as None; it never fails the
        caller.
        """
        keys = []
        seen = set()
        for category, raw_value in pairs:
            token = canonical_token(category, raw_value)
            if token is None or (category, token) in seen:
                continue
            seen.add((category, token))
            keys.append((category, token))

        results = await asyncio.gather(
            *(self.resolve(category, token) for category, token in keys),
            return_exceptions=True
        )

        resolved = {}
        for key, outcome in zip(keys, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Enum resolution failed for {key[0].value}={key[1]}: {outcome}",
                    extra={"error_context": {"category": key[0].value, "value": key[1]}}
                )
                self._cache[key] = None
                resolved[key] = None
            else:
                resolved[key] = outcome

        logger.info(f"Resolved {len(resolved)} distinct enum values")
        return resolved

    async def _find_or_create(
        self,
        category: EnumCategory,
        token: str,
        label: Optional[str]
    ) -> int:
        async with self._semaphore:
            async with self.session_maker() as session:
                entry = await self.find_entry(session, category, token)

                if entry is None:
                    try:
                        entry = await self.create_entry(
                            session, category, token, label or display_label(token)
                        )
                        await session.commit()
                        logger.info(f"Created enum value {category.value}={token}")
                        return entry.id
                    except IntegrityError as e:
                        # Another writer created it first
                        await session.rollback()
                        entry = await self.find_entry(session, category, token)
                        if entry is None:
                            raise EnumResolutionError(
                                "Enum value could not be created or found",
                                context={"category": category.value, "value": token},
                                original_exception=e
                            )
                        logger.debug(f"Enum value {category.value}={token} created concurrently")

                changed = False
                if not entry.active:
                    entry.active = True
                    changed = True
                if label and entry.display_label != label:
                    entry.display_label = label
                    changed = True
                if changed:
                    await session.commit()

                return entry.id

    # ------------------------------------------------------------------
    # Catalog sync
    # ------------------------------------------------------------------

    async def sync_catalog(
        self,
        observed: Dict[EnumCategory, Dict[str, str]]
    ) -> Dict[str, int]:
        """
        Align the catalog with the values currently present in the sheet.

        Args:
            observed: category -> {canonical token: sheet label}

        Missing entries are created, inactive ones reactivated, and entries
        of an observed category that no longer appear are deactivated.
        """
        stats = {"created": 0, "reactivated": 0, "deactivated": 0}

        async with self.session_maker() as session:
            async with session.begin():
                for category, values in observed.items():
                    result = await session.execute(
                        select(EnumCatalogEntry).where(EnumCatalogEntry.category == category)
                    )
                    existing = {entry.value: entry for entry in result.scalars().all()}

                    for token, label in values.items():
                        entry = existing.get(token)
                        if entry is None:
                            session.add(EnumCatalogEntry(
                                category=category,
                                value=token,
                                display_label=label or display_label(token),
                                active=True
                            ))
                            stats["created"] += 1
                        elif not entry.active:
                            entry.active = True
                            stats["reactivated"] += 1

                    for token, entry in existing.items():
                        if token not in values and entry.active:
                            entry.active = False
                            stats["deactivated"] += 1

        self._cache.clear()
        logger.info(
            f"Enum catalog synced: {stats['created']} created, "
            f"{stats['reactivated']} reactivated, {stats['deactivated']} deactivated"
        )
        return stats

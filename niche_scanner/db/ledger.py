"""Result ledger: saved searches, discovered items and the mappings between them.

Every write runs in its own transaction; an item upsert and its mapping
insert share one, so neither can exist without the other being attempted.
All SQLAlchemy failures surface as PersistenceError.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from niche_scanner import metrics
from niche_scanner.db.models import DiscoveredItem, SavedSearch, SearchResultMapping
from niche_scanner.exceptions import PersistenceError
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.utils.time import utcnow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _insert_for(session: AsyncSession):
    """Pick the dialect insert that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[dialect]
    except KeyError:
        raise PersistenceError(f"Upserts are not supported on dialect {dialect!r}")


class ResultLedger:
    """Persistent store of discovered items and saved search configurations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Saved searches
    # ------------------------------------------------------------------

    async def save_search_config(
        self,
        name: str,
        search_phrases: Sequence[str],
        typical_phrases: Sequence[str],
        feedback_threshold: int,
        conditions: Sequence[str],
        now: Optional[datetime] = None,
    ) -> int:
        """Persist a new saved search and return its id."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    search = SavedSearch(
                        name=name,
                        search_phrases=list(search_phrases),
                        typical_phrases=list(typical_phrases),
                        feedback_threshold=feedback_threshold,
                        conditions=list(conditions),
                        created_at=now or utcnow(),
                    )
                    session.add(search)
                    await session.flush()
                    search_id = search.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save search {name!r}: {e}") from e

        logger.info(f"Saved search {name!r} with id {search_id}")
        return search_id

    async def get_search_config(self, search_id: int) -> Optional[SavedSearch]:
        try:
            async with self._session_factory() as session:
                return await session.get(SavedSearch, search_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load search {search_id}: {e}") from e

    async def list_search_configs(self) -> list[SavedSearch]:
        """All saved searches, newest first."""
        query = select(SavedSearch).order_by(
            SavedSearch.created_at.desc(), SavedSearch.id.desc()
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list searches: {e}") from e

    # ------------------------------------------------------------------
    # Discovered items
    # ------------------------------------------------------------------

    async def upsert_discovered_item(
        self,
        item: ItemSummary,
        search_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record an item sighting.

        New items are inserted; known items get last_seen_at advanced and
        are reactivated, first_found_at is never touched. When a search id
        is given the (search, item) mapping is inserted in the same
        transaction, as a no-op if it already exists.
        """
        now = now or utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    insert = _insert_for(session)

                    item_stmt = insert(DiscoveredItem).values(
                        item_id=item.item_id,
                        title=item.title,
                        price=item.price,
                        currency=item.currency,
                        url=item.url,
                        seller_id=item.seller_username,
                        first_found_at=now,
                        last_seen_at=now,
                        is_active=True,
                    )
                    # last_seen_at only moves forward
                    item_stmt = item_stmt.on_conflict_do_update(
                        index_elements=["item_id"],
                        set_={
                            "last_seen_at": case(
                                (
                                    item_stmt.excluded.last_seen_at > DiscoveredItem.last_seen_at,
                                    item_stmt.excluded.last_seen_at,
                                ),
                                else_=DiscoveredItem.last_seen_at,
                            ),
                            "is_active": True,
                        },
                    )
                    await session.execute(item_stmt)

                    if search_id is not None:
                        mapping_stmt = (
                            insert(SearchResultMapping)
                            .values(search_id=search_id, item_id=item.item_id, found_at=now)
                            .on_conflict_do_nothing(index_elements=["search_id", "item_id"])
                        )
                        await session.execute(mapping_stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record item {item.item_id}: {e}") from e

        metrics.items_upserted_total.inc()

    async def existing_results_for_search(
        self,
        search_id: int,
        within_days: int = 7,
        now: Optional[datetime] = None,
    ) -> list[DiscoveredItem]:
        """Active items mapped to the search and seen within the trailing window."""
        cutoff = (now or utcnow()) - timedelta(days=within_days)
        query = (
            select(DiscoveredItem)
            .join(SearchResultMapping, SearchResultMapping.item_id == DiscoveredItem.item_id)
            .where(
                SearchResultMapping.search_id == search_id,
                DiscoveredItem.is_active.is_(True),
                DiscoveredItem.last_seen_at > cutoff,
            )
            .order_by(DiscoveredItem.first_found_at.desc())
        )
        return await self._fetch_items(query, f"recent results for search {search_id}")

    async def all_results_for_search(self, search_id: int) -> list[DiscoveredItem]:
        """All active items mapped to the search, newest first."""
        query = (
            select(DiscoveredItem)
            .join(SearchResultMapping, SearchResultMapping.item_id == DiscoveredItem.item_id)
            .where(
                SearchResultMapping.search_id == search_id,
                DiscoveredItem.is_active.is_(True),
            )
            .order_by(DiscoveredItem.first_found_at.desc())
        )
        return await self._fetch_items(query, f"results for search {search_id}")

    async def _fetch_items(self, query, what: str) -> list[DiscoveredItem]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load {what}: {e}") from e

    async def recent_item_ids(
        self,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> set[str]:
        """Ids of items seen within the last `days` days."""
        cutoff = (now or utcnow()) - timedelta(days=days)
        query = select(DiscoveredItem.item_id).where(DiscoveredItem.last_seen_at > cutoff)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load recent item ids: {e}") from e

    async def mark_stale_inactive(
        self,
        older_than_days: int = 90,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Deactivate items not seen since the cutoff. Rows are never deleted.

        Returns:
            Number of items marked inactive
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        stmt = (
            update(DiscoveredItem)
            .where(
                DiscoveredItem.last_seen_at < cutoff,
                DiscoveredItem.is_active.is_(True),
            )
            .values(is_active=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    changed = result.rowcount or 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to mark stale items: {e}") from e

        if changed:
            logger.info(f"Marked {changed} items inactive (not seen in {older_than_days} days)")
            metrics.items_marked_stale_total.inc(changed)
        return changed

    async def record_listings(
        self,
        listings: Sequence[ItemSummary],
        search_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Upsert a batch of listings, one transaction per item."""
        now = now or utcnow()
        for item in listings:
            await self.upsert_discovered_item(item, search_id=search_id, now=now)
        return len(listings)

"""Shared fixtures."""

from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from niche_scanner.db.ledger import ResultLedger
from niche_scanner.db.models import Base
from niche_scanner.ingest.ebay import ItemSummary


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory) -> ResultLedger:
    return ResultLedger(session_factory)


@pytest.fixture
def make_item():
    """Factory for listings as returned by the marketplace."""

    def _make(
        item_id: str,
        title: str = "Vintage brooch lot",
        seller: Optional[str] = "seller",
        feedback: int = 100,
        condition: Optional[str] = "Used",
        price: str = "19.99",
    ) -> ItemSummary:
        return ItemSummary(
            item_id=item_id,
            title=title,
            price=Decimal(price),
            currency="USD",
            url=f"https://www.ebay.com/itm/{item_id}",
            seller_username=seller,
            seller_feedback_score=feedback,
            condition=condition,
        )

    return _make

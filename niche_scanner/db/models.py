"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from niche_scanner.utils.time import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SavedSearch(Base):
    """User-authored scan recipe. Replaced wholesale, never edited in place."""

    __tablename__ = "saved_searches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    search_phrases: Mapped[list] = mapped_column(JSON, nullable=False)
    typical_phrases: Mapped[list] = mapped_column(JSON, nullable=False)
    feedback_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    conditions: Mapped[list] = mapped_column(JSON, nullable=False)  # Condition codes
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    mappings: Mapped[list["SearchResultMapping"]] = relationship(
        "SearchResultMapping", back_populates="search", cascade="all, delete-orphan"
    )


class DiscoveredItem(Base):
    """A marketplace listing the scanner has ever recorded, keyed by its eBay item id."""

    __tablename__ = "discovered_items"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seller_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    first_found_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    mappings: Mapped[list["SearchResultMapping"]] = relationship(
        "SearchResultMapping", back_populates="item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("last_seen_at >= first_found_at", name="ck_item_seen_order"),
    )


class SearchResultMapping(Base):
    """Which saved search found which item."""

    __tablename__ = "search_result_mappings"

    search_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("saved_searches.id"), primary_key=True
    )
    item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("discovered_items.item_id"), primary_key=True
    )
    found_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    search: Mapped["SavedSearch"] = relationship("SavedSearch", back_populates="mappings")
    item: Mapped["DiscoveredItem"] = relationship("DiscoveredItem", back_populates="mappings")


Index("idx_mappings_item_id", SearchResultMapping.item_id)

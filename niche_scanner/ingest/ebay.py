"""eBay Browse and Finding API adapter.

Builds the three marketplace requests the scanner needs and parses their
responses into ItemSummary records:

- keyword search (Browse API, bearer token)
- a seller's total listing count (Finding API, entriesPerPage=1)
- a sample of a seller's own listings (Finding API)
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from niche_scanner.config import settings
from niche_scanner.exceptions import ExternalServiceError, MalformedResponseError
from niche_scanner.ingest.http_client import MarketplaceClient

logger = logging.getLogger(__name__)


@dataclass
class ItemSummary:
    """One listing as returned by search or seller-inventory calls."""

    item_id: str
    title: str
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    url: Optional[str] = None
    seller_username: Optional[str] = None
    seller_feedback_score: int = 0
    condition: Optional[str] = None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _first(values: Any, default: Any = None) -> Any:
    """Finding API wraps every scalar in a one-element list."""
    if isinstance(values, list):
        return values[0] if values else default
    return values if values is not None else default


def parse_browse_item(raw: dict) -> ItemSummary:
    price = raw.get("price") or {}
    seller = raw.get("seller") or {}
    return ItemSummary(
        item_id=raw["itemId"],
        title=raw.get("title") or "",
        price=_to_decimal(price.get("value")),
        currency=price.get("currency"),
        url=raw.get("itemWebUrl"),
        seller_username=seller.get("username") or None,
        seller_feedback_score=_to_int(seller.get("feedbackScore")),
        condition=raw.get("condition"),
    )


def parse_finding_item(raw: dict) -> ItemSummary:
    selling_status = _first(raw.get("sellingStatus"), {})
    current_price = _first(selling_status.get("currentPrice"), {})
    condition = _first(raw.get("condition"), {})
    seller_info = _first(raw.get("sellerInfo"), {})
    return ItemSummary(
        item_id=_first(raw["itemId"]),
        title=_first(raw.get("title"), ""),
        price=_to_decimal(current_price.get("__value__")),
        currency=current_price.get("@currencyId"),
        url=_first(raw.get("viewItemURL")),
        seller_username=_first(seller_info.get("sellerUserName")),
        seller_feedback_score=_to_int(_first(seller_info.get("feedbackScore"))),
        condition=_first(condition.get("conditionDisplayName")),
    )


class EbayApi:
    """Marketplace endpoints used by the fetcher and the seller qualifier."""

    def __init__(
        self,
        client: MarketplaceClient,
        app_id: Optional[str] = None,
        marketplace_id: Optional[str] = None,
        browse_search_url: Optional[str] = None,
        finding_url: Optional[str] = None,
    ):
        self.client = client
        self.app_id = app_id if app_id is not None else settings.ebay_client_id
        self.marketplace_id = marketplace_id or settings.ebay_marketplace_id
        self.browse_search_url = browse_search_url or settings.ebay_browse_search_url
        self.finding_url = finding_url or settings.ebay_finding_url

    async def search_items(
        self,
        phrase: str,
        limit: int,
        access_token: str,
    ) -> list[ItemSummary]:
        """
        Keyword search.

        Returns:
            Item summaries (empty list when the search has no results)
        """
        request = self.client.build_request(
            "GET",
            self.browse_search_url,
            params={"q": phrase, "limit": limit},
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "X-EBAY-C-MARKETPLACE-ID": self.marketplace_id,
            },
        )
        response = await self.client.call(request)

        try:
            data = response.json()
            summaries = data.get("itemSummaries") or []
            return [parse_browse_item(raw) for raw in summaries]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Unexpected search response for {phrase!r}: {e}") from e

    async def _find_by_seller(self, seller_username: str, entries_per_page: int) -> dict:
        params = {
            "OPERATION-NAME": "findItemsAdvanced",
            "SERVICE-VERSION": "1.0.0",
            "SECURITY-APPNAME": self.app_id,
            "RESPONSE-DATA-FORMAT": "JSON",
            "itemFilter(0).name": "Seller",
            "itemFilter(0).value": seller_username,
            "paginationInput.entriesPerPage": entries_per_page,
            "outputSelector": "SellerInfo",
        }
        request = self.client.build_request("GET", self.finding_url, params=params)
        response = await self.client.call(request)

        try:
            body = response.json()["findItemsAdvancedResponse"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(
                f"Unexpected seller response for {seller_username}: {e}"
            ) from e

        if _first(body.get("ack")) == "Failure":
            message = "unknown error"
            try:
                message = body["errorMessage"][0]["error"][0]["message"][0]
            except (KeyError, IndexError, TypeError):
                pass
            raise ExternalServiceError(f"Seller lookup failed for {seller_username}: {message}")
        return body

    async def seller_total_listings(self, seller_username: str) -> int:
        """Total number of active listings the seller has across all categories."""
        body = await self._find_by_seller(seller_username, entries_per_page=1)
        try:
            pagination = _first(body["paginationOutput"])
            return int(_first(pagination["totalEntries"]))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MalformedResponseError(
                f"Missing totalEntries for {seller_username}: {e}"
            ) from e

    async def seller_listings(self, seller_username: str, limit: int) -> list[ItemSummary]:
        """Up to `limit` of the seller's own listings."""
        body = await self._find_by_seller(seller_username, entries_per_page=limit)
        try:
            search_result = _first(body.get("searchResult"), {})
            items = search_result.get("item") or []
            return [parse_finding_item(raw) for raw in items][:limit]
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise MalformedResponseError(
                f"Unexpected seller listings for {seller_username}: {e}"
            ) from e

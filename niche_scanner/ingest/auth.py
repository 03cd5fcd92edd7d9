"""OAuth client-credentials token provider for the eBay APIs."""

import base64
import logging
from typing import Optional

from niche_scanner.config import settings
from niche_scanner.exceptions import AuthenticationError, ExternalServiceError
from niche_scanner.ingest.http_client import MarketplaceClient

logger = logging.getLogger(__name__)


class EbayTokenProvider:
    """
    Exchanges the configured client id/secret for an application bearer token.

    No caching: callers request a fresh token for every scan.
    """

    def __init__(
        self,
        client: MarketplaceClient,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        scope: Optional[str] = None,
    ):
        self.client = client
        self.client_id = client_id if client_id is not None else settings.ebay_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.ebay_client_secret
        )
        self.token_url = token_url or settings.ebay_oauth_url
        self.scope = scope or settings.ebay_oauth_scope

    async def get_token(self) -> str:
        """
        Fetch an access token.

        Raises:
            AuthenticationError: if credentials are missing or the exchange fails
        """
        if not self.client_id or not self.client_secret:
            raise AuthenticationError("Missing eBay API credentials")

        credentials = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()
        request = self.client.build_request(
            "POST",
            self.token_url,
            headers={"Authorization": f"Basic {credentials}"},
            data={"grant_type": "client_credentials", "scope": self.scope},
        )
        try:
            response = await self.client.call(request)
            token = response.json()["access_token"]
        except ExternalServiceError as e:
            raise AuthenticationError(f"Token fetch failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(f"Token response malformed: {e}") from e

        logger.info("Access token obtained")
        return token

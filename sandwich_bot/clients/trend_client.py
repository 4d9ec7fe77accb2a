"""
Birdeye trend-discovery client
Fetches the ranked list of highest-volume token mints
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from sandwich_bot.core.config import TrendConfig
from sandwich_bot.core.errors import MalformedInputError, TransientNetworkError
from sandwich_bot.core.logger import get_logger


logger = get_logger(__name__)


class BirdeyeTrendClient:
    """
    Polling HTTP client for the Birdeye token list

    Usage:
        client = BirdeyeTrendClient(bot_config.trend_config)
        mints = await client.fetch_trending()
        await client.close()
    """

    def __init__(self, config: TrendConfig, session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize trend client

        Args:
            config: Trend configuration
            session: Shared aiohttp session (optional, created lazily)
        """
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Accept": "application/json",
                    "x-chain": "solana"
                }
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this client created it"""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def fetch_trending(self) -> List[str]:
        """
        Fetch trending token mints ranked by the configured metric

        Returns:
            Mint addresses, best rank first, without duplicates

        Raises:
            TransientNetworkError: On transport failure or non-2xx status
            MalformedInputError: If the response body has an unexpected shape
        """
        params = {
            "sort_by": self.config.sort_by,
            "sort_type": self.config.sort_type,
            "offset": 0,
            "limit": self.config.limit,
        }

        session = await self._get_session()
        try:
            async with session.get(
                self.config.api_url,
                params=params,
                headers={"X-API-KEY": self.config.api_key},
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_s)
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise TransientNetworkError(
                        f"Trend API returned HTTP {response.status}",
                        status=response.status,
                        body=body[:500]
                    )
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise MalformedInputError(
                        f"Trend API returned a non-JSON body: {e}",
                        url=self.config.api_url
                    ) from e

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(
                f"Trend API request failed: {str(e) or type(e).__name__}",
                url=self.config.api_url
            ) from e

        return self._parse_tokens(payload)

    @staticmethod
    def _parse_tokens(payload: Dict[str, Any]) -> List[str]:
        """Extract ordered, unique mint addresses from data.tokens[].address"""
        data = payload.get("data") if isinstance(payload, dict) else None
        tokens = data.get("tokens") if isinstance(data, dict) else None
        if not isinstance(tokens, list):
            raise MalformedInputError("Unexpected response structure from trend API")

        mints: List[str] = []
        seen = set()
        for token in tokens:
            address = token.get("address") if isinstance(token, dict) else None
            if not isinstance(address, str) or not address:
                logger.debug("trend_token_without_address", token=token)
                continue
            if address in seen:
                continue
            seen.add(address)
            mints.append(address)

        logger.info("trending_tokens_fetched", count=len(mints))
        return mints

"""
Alchemy NFT API v3 client (indexed NFT ownership).
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from ..errors import UpstreamUnavailableError

logger = logging.getLogger("creditledger.chains.alchemy")

NFT_API_URL = "https://{network}.g.alchemy.com/nft/v3/{api_key}"


class AlchemyNFTClient:
    """Counts NFTs an owner holds in one contract via `getNftsForOwner`."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def count_owned(self, network: str, owner: str, contract: str) -> int:
        """
        Number of tokens of `contract` held by `owner`.

        Raises:
            UpstreamUnavailableError: On HTTP failure or timeout
        """
        session = await self._ensure_session()
        url = NFT_API_URL.format(network=network, api_key=self.api_key) + "/getNftsForOwner"
        params = {
            "owner": owner,
            "contractAddresses[]": contract,
            "withMetadata": "false",
        }

        async def fetch():
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    raise UpstreamUnavailableError(
                        f"Alchemy returned HTTP {resp.status}", provider="alchemy"
                    )
                return await resp.json()

        try:
            data = await asyncio.wait_for(fetch(), timeout=self.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailableError(f"Alchemy request failed: {e}", provider="alchemy")

        if "totalCount" in data:
            return int(data["totalCount"])
        return len(data.get("ownedNfts") or [])

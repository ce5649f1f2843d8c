"""
Solana JSON-RPC client.

Thin aiohttp client over the handful of RPC methods the ledger reads:
getHealth, getTransaction, getAccountInfo and getTokenAccountsByOwner.
Endpoints are probed in order with getHealth and the first healthy one is
used until a transport error or an explicit refresh forces a new probe.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from solders.pubkey import Pubkey

from ..errors import UpstreamUnavailableError

logger = logging.getLogger("creditledger.chains.solana")


def is_solana_address(address: str) -> bool:
    try:
        Pubkey.from_string(address)
        return True
    except ValueError:
        return False


class SolanaRPCError(Exception):
    """JSON-RPC error object returned by a node."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code


class SolanaRPCClient:
    """
    Solana RPC client with health-probed endpoint selection.

    Args:
        rpc_urls: Endpoints in preference order
        timeout: Per-request timeout in seconds
        health_timeout: Per-endpoint getHealth timeout in seconds
        session: Optional shared aiohttp session (not closed by `close`)
    """

    def __init__(
        self,
        rpc_urls: List[str],
        timeout: float = 10,
        health_timeout: float = 5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_urls = list(rpc_urls)
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._session = session
        self._owns_session = session is None
        self._endpoint: Optional[str] = None

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

    async def __aenter__(self) -> "SolanaRPCClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _post(self, url: str, method: str, params: List[Any]) -> Any:
        session = await self._ensure_session()
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        async with session.post(url, json=payload) as resp:
            if resp.status != 200:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status, message=await resp.text()
                )
            data = await resp.json()

        if "error" in data:
            error = data["error"] or {}
            raise SolanaRPCError(error.get("code", -1), error.get("message", "unknown"))
        return data.get("result")

    # =========================================================================
    # Endpoint selection
    # =========================================================================

    async def get_health(self, url: str) -> bool:
        try:
            result = await asyncio.wait_for(
                self._post(url, "getHealth", []), timeout=self.health_timeout
            )
            return result == "ok"
        except (aiohttp.ClientError, asyncio.TimeoutError, SolanaRPCError) as e:
            logger.debug(f"Health probe failed for {url}: {e}")
            return False

    async def select_endpoint(self, refresh: bool = False) -> str:
        """
        First endpoint answering getHealth with "ok".

        Raises:
            UpstreamUnavailableError: If no endpoint is healthy
        """
        if self._endpoint and not refresh:
            return self._endpoint

        for url in self.rpc_urls:
            if await self.get_health(url):
                self._endpoint = url
                logger.debug(f"Using Solana RPC endpoint {url}")
                return url

        raise UpstreamUnavailableError("No healthy Solana RPC endpoint", provider="solana")

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        url = await self.select_endpoint()
        try:
            return await asyncio.wait_for(self._post(url, method, params), timeout=self.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Force a fresh probe on the next call
            self._endpoint = None
            raise UpstreamUnavailableError(f"Solana RPC {method} failed: {e}", provider="solana")
        except SolanaRPCError as e:
            raise UpstreamUnavailableError(f"Solana RPC {method} failed: {e}", provider="solana")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        """Parsed account value, or None if the account does not exist."""
        result = await self._rpc("getAccountInfo", [address, {"encoding": "jsonParsed"}])
        if result:
            return result.get("value")
        return None

    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> List[Dict[str, Any]]:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed"}],
        )
        if result and "value" in result:
            return result["value"]
        return []

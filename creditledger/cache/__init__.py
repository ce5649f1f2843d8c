"""
Ledger Cache Module

Bounded in-memory caches used by the ledger services.

Components:
- LRUCache: duplicate-submission window, revoked tokens
- TTLCache: NFT entitlement results
- RevokedTokenStore: LRU-backed token revocation list
"""

from .memory_cache import LRUCache, RevokedTokenStore, TTLCache, TTLEntry

__all__ = [
    "LRUCache",
    "RevokedTokenStore",
    "TTLCache",
    "TTLEntry",
]

"""
Duplicate submission guard.

Rejects the same payment claim submitted again within a short window.
Advisory only; the ledger's natural-key constraint is what prevents a
double credit.
"""

import hashlib
import json
import logging
import math
import time
from typing import Any, Callable

from ..accounts import AccountKey, storage_key
from ..cache import LRUCache
from ..errors import DuplicateSubmissionError

logger = logging.getLogger("creditledger.dedup")

_CLAIM_FIELDS = ("rail", "chain_id", "tx_id", "payment_intent_id", "token_symbol", "amount")


class DuplicateSubmissionGuard:
    """
    Fingerprint window over recent claims.

    Args:
        cache: LRU holding fingerprint -> submission time
        window_seconds: How long a fingerprint blocks resubmission
        clock: Time source
    """

    def __init__(
        self,
        cache: LRUCache,
        window_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self.window_seconds = window_seconds
        self._clock = clock

    @staticmethod
    def fingerprint(claim: Any, payer: AccountKey) -> str:
        """SHA-256 over the canonical JSON of the claim's salient fields and the payer."""
        payload = {}
        for name in _CLAIM_FIELDS:
            value = getattr(claim, name, None)
            if hasattr(value, "value"):
                value = value.value
            payload[name] = None if value is None else str(value)
        payload["payer"] = storage_key(payer)
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def check(self, claim: Any, payer: AccountKey) -> str:
        """
        Record a claim, or reject it if seen within the window.

        Returns:
            The claim fingerprint

        Raises:
            DuplicateSubmissionError: With `retry_after` seconds
        """
        fp = self.fingerprint(claim, payer)
        now = self._clock()
        seen_at = self._cache.get(fp)
        if seen_at is not None:
            elapsed = now - seen_at
            if elapsed < self.window_seconds:
                retry_after = max(1, math.ceil(self.window_seconds - elapsed))
                logger.warning(f"Duplicate submission {fp[:12]} (retry in {retry_after}s)")
                raise DuplicateSubmissionError(fp, retry_after)

        self._cache.set(fp, now)
        return fp

    def release(self, fingerprint: str) -> None:
        """Forget a fingerprint so the claim can be retried immediately."""
        self._cache.delete(fingerprint)

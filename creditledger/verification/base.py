"""Shared verifier types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from ..credits.models import Rail


@dataclass(frozen=True)
class VerifiedPayment:
    """A payment confirmed against the chain or the processor."""
    actual_amount: Decimal
    sender: str
    rail: Rail
    token_symbol: str
    chain_id: Optional[str] = None
    tx_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    block_number: Optional[int] = None
    slot: Optional[int] = None

    def correlation(self) -> Dict[str, Any]:
        data = {"sender": self.sender}
        if self.block_number is not None:
            data["block_number"] = self.block_number
        if self.slot is not None:
            data["slot"] = self.slot
        return data


class PaymentVerifier(ABC):
    """Confirms an on-chain payment claim. Read-only."""

    rail: Rail

    @abstractmethod
    async def verify(
        self,
        tx_id: str,
        claimed_sender: str,
        token_symbol: str,
        claimed_amount: Decimal,
        chain_id: str,
    ) -> VerifiedPayment:
        """
        Verify a claimed transfer to the configured payment wallet.

        Raises:
            PaymentError: A subclass describing why the claim was refused
        """

    async def close(self) -> None:
        pass

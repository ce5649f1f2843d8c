"""
Credit rate table.

    credits = floor(amount * base_rate * scaling * nft_multiplier)

Card purchases use the size-tiered scaling; on-chain stablecoin payments
use a flat rate (scaling 1.0). Holders of a qualifying collection get the
holder multiplier on both rails. All arithmetic is Decimal.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Tuple, Union

BASE_RATE = Decimal("5")
NFT_HOLDER_MULTIPLIER = Decimal("1.2")

# (minimum purchase, multiplier), highest threshold first
SCALING_TIERS: Tuple[Tuple[Decimal, Decimal], ...] = (
    (Decimal("80"), Decimal("1.3")),
    (Decimal("40"), Decimal("1.2")),
    (Decimal("20"), Decimal("1.1")),
)

Number = Union[Decimal, int, str]


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


@dataclass(frozen=True)
class CreditQuote:
    amount: Decimal
    credits: int
    base_rate: Decimal
    scaling: Decimal
    nft_multiplier: Decimal

    def __int__(self) -> int:
        return self.credits

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "credits": self.credits,
            "base_rate": str(self.base_rate),
            "scaling": str(self.scaling),
            "nft_multiplier": str(self.nft_multiplier),
        }


@dataclass(frozen=True)
class RateSchedule:
    base_rate: Decimal = BASE_RATE
    nft_holder_multiplier: Decimal = NFT_HOLDER_MULTIPLIER
    tiers: Tuple[Tuple[Decimal, Decimal], ...] = SCALING_TIERS

    @classmethod
    def from_settings(cls, settings: Any) -> "RateSchedule":
        """Build from a `RateSettings` config model."""
        tiers = sorted(
            ((t.min_amount, t.multiplier) for t in settings.tiers),
            key=lambda tier: tier[0],
            reverse=True,
        )
        return cls(
            base_rate=settings.base_rate,
            nft_holder_multiplier=settings.nft_holder_multiplier,
            tiers=tuple(tiers),
        )

    def scaling_for(self, amount: Decimal) -> Decimal:
        for threshold, multiplier in self.tiers:
            if amount >= threshold:
                return multiplier
        return Decimal("1")

    def quote(self, amount: Number, is_nft_holder: bool = False, tiered: bool = True) -> CreditQuote:
        amount = to_decimal(amount)
        if amount < 0:
            raise ValueError("amount must be non-negative")
        scaling = self.scaling_for(amount) if tiered else Decimal("1")
        nft = self.nft_holder_multiplier if is_nft_holder else Decimal("1")
        raw = amount * self.base_rate * scaling * nft
        credits = int(raw.to_integral_value(rounding=ROUND_FLOOR))
        return CreditQuote(
            amount=amount,
            credits=credits,
            base_rate=self.base_rate,
            scaling=scaling,
            nft_multiplier=nft,
        )


DEFAULT_SCHEDULE = RateSchedule()


def calculate_credits(
    amount: Number,
    is_nft_holder: bool = False,
    tiered: bool = True,
    schedule: RateSchedule = DEFAULT_SCHEDULE,
) -> CreditQuote:
    """
    Convert a payment amount (USD or stablecoin units) into credits.

    Args:
        amount: Payment amount
        is_nft_holder: Apply the holder multiplier
        tiered: Apply size-tiered scaling (card purchases)
        schedule: Rate table, the built-in one by default

    Returns:
        CreditQuote with the floored credit count
    """
    return schedule.quote(amount, is_nft_holder=is_nft_holder, tiered=tiered)

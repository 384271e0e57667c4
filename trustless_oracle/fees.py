"""
Fee estimation and amount planning for payout transactions.

Sizes assume legacy P2PKH inputs:
    size = 10 + 148 * inputs + 34 * outputs
    fee  = ceil(size * rate * 1.2)
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .errors import InsufficientFunds, ProviderError
from .providers import BitcoinProvider

logger = structlog.get_logger()

TX_OVERHEAD_BYTES = 10
P2PKH_INPUT_BYTES = 148
OUTPUT_BYTES = 34

# Fee margin as a ratio (12/10 = 1.2)
FEE_MARGIN_NUM = 12
FEE_MARGIN_DEN = 10

TESTNET_MAX_FEE_RATE = 5
FALLBACK_FEE_RATE = {"mainnet": 5, "testnet": 2, "regtest": 2}


@dataclass(frozen=True)
class FeePlan:
    """Amounts of a planned payout, all in satoshis."""

    send: int
    change: int
    fee: int
    fee_rate: int
    size_bytes: int


def estimate_size(input_count: int, output_count: int = 2) -> int:
    return TX_OVERHEAD_BYTES + P2PKH_INPUT_BYTES * input_count + OUTPUT_BYTES * output_count


def fee_for(size_bytes: int, fee_rate: int) -> int:
    """ceil(size * rate * 1.2) in integer arithmetic."""
    numerator = size_bytes * fee_rate * FEE_MARGIN_NUM
    return (numerator + FEE_MARGIN_DEN - 1) // FEE_MARGIN_DEN


def plan_amounts(
    total_sats: int,
    target_sats: int,
    input_count: int,
    fee_rate: int,
    output_count: int = 2,
) -> FeePlan:
    """
    Split `total_sats` into the payout, the fee and the change.

    Raises InsufficientFunds when the change would be negative.
    """
    if target_sats <= 0:
        raise ValueError(f"Payout amount must be positive, got {target_sats}")
    if input_count <= 0:
        raise ValueError("At least one input is required")

    size = estimate_size(input_count, output_count)
    fee = fee_for(size, fee_rate)
    change = total_sats - target_sats - fee
    if change < 0:
        raise InsufficientFunds(available=total_sats, required=target_sats, fee=fee)

    return FeePlan(send=target_sats, change=change, fee=fee, fee_rate=fee_rate, size_bytes=size)


class FeePlanner:
    """Plans payouts using the first fee estimate any provider offers."""

    def __init__(self, providers: Sequence[BitcoinProvider], network: str):
        self.providers = list(providers)
        self.network = network

    @property
    def fallback_rate(self) -> int:
        return FALLBACK_FEE_RATE.get(self.network, FALLBACK_FEE_RATE["mainnet"])

    async def get_fee_rate(self) -> int:
        """Current next-block fee rate in sat/byte."""
        rate: Optional[int] = None
        for provider in self.providers:
            try:
                rate = await provider.estimate_fee_rate()
            except ProviderError as e:
                logger.warning("fee_estimate_failed", provider=provider.name, error=str(e))
                continue
            if rate is not None:
                break

        if rate is None:
            logger.warning("fee_estimate_unavailable", fallback=self.fallback_rate)
            return self.fallback_rate

        rate = max(rate, 1)
        if self.network != "mainnet":
            rate = min(rate, TESTNET_MAX_FEE_RATE)
        return rate

    async def plan(
        self,
        total_sats: int,
        target_sats: int,
        input_count: int,
        output_count: int = 2,
    ) -> FeePlan:
        fee_rate = await self.get_fee_rate()
        plan = plan_amounts(total_sats, target_sats, input_count, fee_rate, output_count)
        logger.info(
            "payout_planned",
            send=plan.send,
            change=plan.change,
            fee=plan.fee,
            fee_rate=fee_rate,
            inputs=input_count,
        )
        return plan

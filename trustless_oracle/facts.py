"""
Normalized view of a Bitcoin transaction as seen by one provider.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .address import NetworkParams, address_to_output_script, decode_address


@dataclass(frozen=True)
class TrackedAddress:
    """The bridge's Bitcoin address together with its network and scriptPubKey."""

    address: str
    network: NetworkParams

    def __post_init__(self) -> None:
        if decode_address(self.address, self.network) is None:
            raise ValueError(f"Invalid {self.network.name} address: {self.address}")

    @property
    def script_pubkey(self) -> bytes:
        return address_to_output_script(self.address, self.network)


@dataclass(frozen=True)
class TransactionFacts:
    """
    What a provider reports about a transaction.

    `amount_sats` is the total paid to the tracked address; it is positive
    exactly when `receiver_is_tracked` is true.
    """

    tx_hash: str
    amount_sats: int
    senders: frozenset[str]
    receiver_is_tracked: bool
    confirmations: int
    provider: str = ""
    block_height: Optional[int] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.amount_sats < 0:
            raise ValueError(f"amount_sats must be non-negative, got {self.amount_sats}")
        if (self.amount_sats > 0) != self.receiver_is_tracked:
            raise ValueError(
                "amount_sats must be positive if and only if the tracked address is paid"
            )
        if self.confirmations < 0:
            raise ValueError(f"confirmations must be non-negative, got {self.confirmations}")

    @property
    def consensus_key(self) -> tuple[str, int, frozenset[str], bool, int]:
        """Fields that must match exactly for two providers to agree."""
        return (
            self.tx_hash,
            self.amount_sats,
            self.senders,
            self.receiver_is_tracked,
            self.confirmations,
        )

    @property
    def single_sender(self) -> Optional[str]:
        if len(self.senders) != 1:
            return None
        return next(iter(self.senders))

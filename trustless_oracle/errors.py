"""
Error taxonomy for the bridge oracle.

Provider-level failures are excluded from consensus and only surface once
every provider has failed. Build and signing errors abort the whole payout.
"""

from typing import Optional


class OracleError(Exception):
    """Base class for all oracle errors."""


class ProviderError(OracleError):
    """A single Bitcoin provider failed to answer."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class ConsensusUnavailable(OracleError):
    """Every configured provider failed (or no quorum could be reached)."""

    def __init__(self, message: str, failures: Optional[dict[str, str]] = None):
        self.failures = failures or {}
        super().__init__(message)


class NoProviderAvailable(ConsensusUnavailable):
    """Every provider failed or did not know the transaction."""


class InsufficientFunds(OracleError):
    """UTXO value does not cover the payout plus fee."""

    def __init__(self, available: int, required: int, fee: int):
        self.available = available
        self.required = required
        self.fee = fee
        super().__init__(
            f"Not enough funds to cover destination + fee: "
            f"available={available} amount={required} fee={fee}"
        )


class NoUtxos(OracleError):
    """The tracked address has nothing to spend."""


class TransactionBuildError(OracleError):
    """The payout transaction could not be assembled."""


class SigningFailure(OracleError):
    """A per-input signature could not be obtained or attached."""

    def __init__(self, message: str, input_index: Optional[int] = None):
        self.input_index = input_index
        if input_index is not None:
            message = f"input {input_index}: {message}"
        super().__init__(message)


class VerificationFailure(OracleError):
    """A claim could not be proven (bad signature or ambiguous sender)."""


class ChainConnectionError(OracleError):
    """The EVM RPC endpoint could not be reached after all reconnect attempts."""


class ContractTransactionError(OracleError):
    """A contract transaction was mined but reverted."""

    def __init__(self, function: str, tx_hash: str):
        self.function = function
        self.tx_hash = tx_hash
        super().__init__(f"{function} reverted: {tx_hash}")

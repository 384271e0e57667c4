"""
Consensus transaction fetcher.

Asks every provider about a transaction at once and keeps the answer the
largest group of providers agrees on exactly.
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .errors import ConsensusUnavailable, NoProviderAvailable
from .facts import TransactionFacts
from .providers import BitcoinProvider

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderResponse:
    """A provider's answer and the order in which it arrived."""

    provider: str
    facts: TransactionFacts
    arrival: int


def reconcile(responses: Sequence[ProviderResponse], min_agreeing: int = 1) -> TransactionFacts:
    """
    Pick the consensus answer.

    Responses are grouped by `TransactionFacts.consensus_key`. The largest
    group wins; on a tie, the group containing the earliest response wins.
    The facts returned are those of the earliest response in the winning group.
    """
    if not responses:
        raise ConsensusUnavailable("No provider returned transaction data")

    groups: dict[tuple, list[ProviderResponse]] = {}
    for response in sorted(responses, key=lambda r: r.arrival):
        groups.setdefault(response.facts.consensus_key, []).append(response)

    winner = min(groups.values(), key=lambda g: (-len(g), g[0].arrival))

    if len(groups) > 1:
        logger.warning(
            "consensus_disagreement",
            tx_hash=winner[0].facts.tx_hash,
            groups=[[r.provider for r in g] for g in groups.values()],
            chosen=[r.provider for r in winner],
        )

    if len(winner) < min_agreeing:
        raise ConsensusUnavailable(
            f"Only {len(winner)} provider(s) agree, {min_agreeing} required"
        )

    return winner[0].facts


class ConsensusFetcher:
    """Fans a lookup out to every provider and reconciles the answers."""

    def __init__(self, providers: Sequence[BitcoinProvider], min_agreeing: int = 1):
        if not providers:
            raise ValueError("ConsensusFetcher needs at least one provider")
        self.providers = list(providers)
        self.min_agreeing = min_agreeing

    async def fetch(self, tx_hash: str) -> TransactionFacts:
        """
        Consensus facts for `tx_hash`.

        Raises NoProviderAvailable when no provider returns data, and
        ConsensusUnavailable when the winning group is below the agreement
        floor.
        """
        counter = itertools.count()

        async def ask(provider: BitcoinProvider) -> tuple[Optional[TransactionFacts], int]:
            facts = await provider.fetch_facts(tx_hash)
            return facts, next(counter)

        results = await asyncio.gather(
            *(ask(p) for p in self.providers), return_exceptions=True
        )

        responses: list[ProviderResponse] = []
        failures: dict[str, str] = {}
        for provider, result in zip(self.providers, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures[provider.name] = str(result)
                logger.warning("provider_failed", provider=provider.name, tx_hash=tx_hash, error=str(result))
                continue
            facts, arrival = result
            if facts is None:
                failures[provider.name] = "transaction not found"
                continue
            responses.append(ProviderResponse(provider.name, facts, arrival))

        if not responses:
            raise NoProviderAvailable(
                f"Failed to fetch transaction {tx_hash} from all providers", failures
            )

        facts = reconcile(responses, self.min_agreeing)
        logger.debug(
            "consensus_reached",
            tx_hash=tx_hash,
            provider=facts.provider,
            responses=len(responses),
            confirmations=facts.confirmations,
        )
        return facts

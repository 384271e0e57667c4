"""
Main oracle logic - watches bridge events, verifies Bitcoin deposits,
and builds, signs and validates Bitcoin payouts for burns.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .address import get_network
from .builder import BitcoinGateway, Broadcaster, SignedTransaction, TransactionBuilder
from .config import OracleConfig
from .connection import ConnectionManager, Web3Factory, default_web3_factory
from .consensus import ConsensusFetcher
from .db import STATUS_BROADCAST, STATUS_BUILT, STATUS_FAILED, STATUS_SIGNED, BurnJournal
from .errors import ChainConnectionError, OracleError, VerificationFailure
from .evm import EVENT_NAMES, SET_ORACLE_GAS_LIMIT, BridgeContract, BurnStatus
from .facts import TrackedAddress, TransactionFacts
from .fees import FeePlanner
from .kms import RoflClient
from .signer import RemoteSigner
from .signmessage import verify_message

logger = structlog.get_logger()

ORACLE_REGISTRATION_CHECKS = 10
ORACLE_REGISTRATION_DELAY_SECONDS = 3.0


@dataclass(frozen=True)
class ProofSubmitted:
    """A user claims a deposit: `signature` signs "0x<txhash><claimant>"."""

    tx_hash: bytes
    signature: str
    claimant: str


@dataclass(frozen=True)
class BurnGenerate:
    burn_id: int


@dataclass(frozen=True)
class BurnValidate:
    burn_id: int


OracleEvent = Union[ProofSubmitted, BurnGenerate, BurnValidate]


def event_from_log(log: Any) -> OracleEvent:
    """Typed event from a decoded web3 log entry."""
    name = log["event"]
    args = log["args"]
    if name == "TransactionProofSubmitted":
        return ProofSubmitted(
            tx_hash=bytes(args["txHash"]),
            signature=args["signature"],
            claimant=Web3.to_checksum_address(args["ethereumAddress"]),
        )
    if name == "BurnGenerateTransaction":
        return BurnGenerate(int(args["burnId"]))
    if name == "BurnValidateTransaction":
        return BurnValidate(int(args["burnId"]))
    raise ValueError(f"Unknown bridge event: {name}")


class EventPoller:
    """
    Polls the bridge contract for new events.

    Without a start block, polling begins after the chain head seen on the
    first call. Events are returned in (block, log index) order.
    """

    def __init__(self, contract: BridgeContract, start_block: Optional[int] = None):
        self.contract = contract
        self.next_block = start_block

    async def poll(self) -> list[OracleEvent]:
        latest = await self.contract.block_number()
        if self.next_block is None:
            self.next_block = latest + 1
            logger.info("event_poller_started", from_block=self.next_block)
            return []
        if latest < self.next_block:
            return []

        logs: list[Any] = []
        for name in EVENT_NAMES:
            logs.extend(await self.contract.get_events(name, self.next_block, latest))
        logs.sort(key=lambda log: (log["blockNumber"], log["logIndex"]))

        logger.debug("events_polled", from_block=self.next_block, to_block=latest, count=len(logs))
        self.next_block = latest + 1

        events = []
        for log in logs:
            try:
                events.append(event_from_log(log))
            except (KeyError, ValueError) as e:
                logger.warning("event_decode_failed", error=str(e))
        return events


@dataclass
class OracleState:
    """Current oracle state."""

    is_running: bool = False
    last_poll_time: Optional[datetime] = None
    deposits_minted: int = 0
    burns_signed: int = 0
    burns_validated: int = 0
    events_failed: int = 0


class TrustlessBridgeOracle:
    """
    Oracle that:
    1. Mints wrapped BTC for proven deposits to the bridge address
    2. Builds, signs and broadcasts payouts for burn requests
    3. Validates burns once their payout is confirmed

    Events are queued and each one is handled in its own task. A failing
    handler is logged and never stops the loop.
    """

    def __init__(
        self,
        config: OracleConfig,
        contract: BridgeContract,
        tracked: TrackedAddress,
        fetcher: ConsensusFetcher,
        builder: TransactionBuilder,
        broadcaster: Broadcaster,
        signer: RemoteSigner,
        journal: BurnJournal,
        poller: Optional[EventPoller] = None,
    ):
        self.config = config
        self.contract = contract
        self.tracked = tracked
        self.fetcher = fetcher
        self.builder = builder
        self.broadcaster = broadcaster
        self.signer = signer
        self.journal = journal
        self.poller = poller or EventPoller(contract)
        self.state = OracleState()

        self.queue: asyncio.Queue[OracleEvent] = asyncio.Queue()
        self._tasks: set[asyncio.Task[None]] = set()
        self._in_flight: set[tuple[str, int]] = set()
        # Payouts share the tracked address's UTXOs; one build at a time
        self._payout_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

        settings = config.settings
        logger.info(
            "oracle_initialized",
            contract=contract.address,
            bitcoin_address=tracked.address,
            bitcoin_network=settings.bitcoin_network,
            providers=len(config.registry),
            confirmations_required=settings.confirmations_required,
        )

    # -- dispatch --------------------------------------------------------------

    async def handle_event(self, event: OracleEvent) -> None:
        """Handle one event; errors are logged, never raised."""
        try:
            if isinstance(event, ProofSubmitted):
                await self.handle_proof_submitted(event)
            elif isinstance(event, BurnGenerate):
                await self.handle_burn_generate(event)
            elif isinstance(event, BurnValidate):
                await self.handle_burn_validate(event)
        except Exception as e:
            self.state.events_failed += 1
            logger.error("event_handler_error", event_type=type(event).__name__, error=str(e))

    def _spawn(self, event: OracleEvent) -> asyncio.Task[None]:
        task = asyncio.create_task(self.handle_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch(self) -> None:
        while True:
            event = await self.queue.get()
            self._spawn(event)
            self.queue.task_done()

    # -- deposits --------------------------------------------------------------

    def _verify_deposit(self, facts: TransactionFacts, event: ProofSubmitted) -> str:
        """The deposit's sender, once the claim is proven."""
        sender = facts.single_sender
        if sender is None:
            raise VerificationFailure(f"Deposit has {len(facts.senders)} senders, expected exactly one")
        if not facts.receiver_is_tracked:
            raise VerificationFailure("Deposit does not pay the bridge address")

        message = "0x" + event.tx_hash.hex() + event.claimant
        if not verify_message(message, event.signature, sender, self.tracked.network):
            raise VerificationFailure(f"Signature does not prove {sender} authorized {event.claimant}")
        return sender

    async def handle_proof_submitted(self, event: ProofSubmitted) -> bool:
        """Mint for a proven deposit. Returns True if mint was sent."""
        tx_hash = event.tx_hash.hex()
        facts = await self.fetcher.fetch(tx_hash)

        try:
            self._verify_deposit(facts, event)
        except VerificationFailure as e:
            logger.warning("deposit_rejected", tx_hash=tx_hash, claimant=event.claimant, error=str(e))
            return False

        await self.contract.mint(event.claimant, facts.amount_sats, event.tx_hash)
        self.state.deposits_minted += 1
        logger.info(
            "deposit_minted",
            tx_hash=tx_hash,
            claimant=event.claimant,
            amount_sats=facts.amount_sats,
            confirmations=facts.confirmations,
        )
        return True

    # -- burns -----------------------------------------------------------------

    async def handle_burn_generate(self, event: BurnGenerate) -> Optional[str]:
        """
        Pay out a burn request.

        Returns the Bitcoin txid, or None when the burn is not awaiting a
        payout (or one is already in flight or journaled).
        """
        burn_id = event.burn_id
        key = ("generate", burn_id)
        if key in self._in_flight:
            logger.info("burn_already_in_flight", burn_id=burn_id)
            return None

        self._in_flight.add(key)
        try:
            record = await self.contract.burn_data(burn_id)
            if not record.awaiting_signature:
                logger.info("burn_generate_skipped", burn_id=burn_id, status=record.status.name)
                return None
            if not self.journal.claim(burn_id):
                return None

            async with self._payout_lock:
                try:
                    signed = await self.builder.build_and_sign(
                        record.destination_address, record.amount_sats, self.signer
                    )
                    self.journal.mark_built(burn_id, signed.tx_hash, signed.raw_tx_hex)
                    await self.contract.burn_signed(
                        burn_id, signed.raw_tx_hex.encode("utf-8"), bytes.fromhex(signed.tx_hash)
                    )
                except Exception as e:
                    self.journal.mark_failed(burn_id, str(e))
                    raise

                self.journal.mark_signed(burn_id, signed.tx_hash, signed.raw_tx_hex)
                self.state.burns_signed += 1
                await self._broadcast(burn_id, signed)
            return signed.tx_hash
        finally:
            self._in_flight.discard(key)

    async def _broadcast(self, burn_id: int, signed: SignedTransaction) -> None:
        await self.broadcaster.broadcast(signed)
        self.journal.mark_broadcast(burn_id)
        logger.info("burn_payout_broadcast", burn_id=burn_id, tx_hash=signed.tx_hash, fee=signed.fee_sats)

    async def handle_burn_validate(self, event: BurnValidate) -> bool:
        """Mark a burn validated once its payout has enough confirmations."""
        burn_id = event.burn_id
        key = ("validate", burn_id)
        if key in self._in_flight:
            return False

        self._in_flight.add(key)
        try:
            record = await self.contract.burn_data(burn_id)
            if record.status == BurnStatus.VALIDATED:
                self.journal.mark_validated(burn_id)
                return False
            if record.status != BurnStatus.SIGNED:
                logger.info("burn_validate_skipped", burn_id=burn_id, status=record.status.name)
                return False

            facts = await self.fetcher.fetch(record.transaction_hash_hex)
            required = self.config.settings.confirmations_required
            if facts.confirmations < required:
                logger.info(
                    "burn_awaiting_confirmations",
                    burn_id=burn_id,
                    tx_hash=record.transaction_hash_hex,
                    confirmations=facts.confirmations,
                    required=required,
                )
                return False

            await self.contract.validate_burn(burn_id)
            self.journal.mark_validated(burn_id)
            self.state.burns_validated += 1
            logger.info("burn_validated", burn_id=burn_id, tx_hash=record.transaction_hash_hex)
            return True
        finally:
            self._in_flight.discard(key)

    async def recheck_pending(self) -> list[OracleEvent]:
        """
        Resume journaled payouts.

        A payout whose burnSigned outcome was lost is adopted once the
        contract records its hash. Payouts recorded on-chain but not
        broadcast are re-sent; broadcast payouts are re-queued for
        validation.
        """
        for entry in self.journal.list_by_status(STATUS_BUILT, STATUS_FAILED):
            if entry.tx_hash is None or entry.raw_tx_hex is None:
                continue
            if ("generate", entry.burn_id) in self._in_flight:
                continue
            record = await self.contract.burn_data(entry.burn_id)
            if record.status == BurnStatus.SIGNED and record.transaction_hash_hex == entry.tx_hash:
                logger.info("burn_payout_recovered", burn_id=entry.burn_id, tx_hash=entry.tx_hash)
                self.journal.mark_signed(entry.burn_id, entry.tx_hash, entry.raw_tx_hex)
            elif record.status == BurnStatus.SIGNED:
                logger.error(
                    "burn_payout_unknown",
                    burn_id=entry.burn_id,
                    journaled=entry.tx_hash,
                    on_chain=record.transaction_hash_hex,
                )

        events: list[OracleEvent] = []
        for entry in self.journal.list_by_status(STATUS_SIGNED):
            if entry.raw_tx_hex is None or entry.tx_hash is None:
                continue
            signed = SignedTransaction(raw_tx_hex=entry.raw_tx_hex, tx_hash=entry.tx_hash)
            try:
                async with self._payout_lock:
                    await self._broadcast(entry.burn_id, signed)
            except OracleError as e:
                logger.warning("rebroadcast_failed", burn_id=entry.burn_id, error=str(e))

        for entry in self.journal.list_by_status(STATUS_BROADCAST):
            events.append(BurnValidate(entry.burn_id))
        return events

    # -- loop ------------------------------------------------------------------

    async def _collect_events(self) -> list[OracleEvent]:
        events = await self.poller.poll()
        events.extend(await self.recheck_pending())
        self.state.last_poll_time = datetime.now()
        return events

    async def run_once(self) -> list[OracleEvent]:
        """
        Run one cycle: poll, then handle every event to completion.

        Returns the events handled.
        """
        events = await self._collect_events()
        await asyncio.gather(*(self.handle_event(event) for event in events))
        return events

    async def run(self) -> None:
        """Run the oracle until stop() is called."""
        self.state.is_running = True
        self._stop_event.clear()
        interval = self.config.settings.poll_interval_seconds

        logger.info("oracle_starting", poll_interval=interval)
        dispatcher = asyncio.create_task(self._dispatch())

        try:
            while self.state.is_running:
                try:
                    for event in await self._collect_events():
                        await self.queue.put(event)
                    logger.debug(
                        "poll_cycle_complete",
                        minted=self.state.deposits_minted,
                        signed=self.state.burns_signed,
                        validated=self.state.burns_validated,
                        failed=self.state.events_failed,
                    )
                except ChainConnectionError:
                    raise
                except Exception as e:
                    logger.error("poll_cycle_error", error=str(e))

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.queue.join()
            dispatcher.cancel()
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self.state.is_running = False
            logger.info("oracle_stopped")

    def stop(self) -> None:
        """Stop the oracle after in-flight events finish."""
        self.state.is_running = False
        self._stop_event.set()
        logger.info("oracle_stopping")

    async def close(self) -> None:
        await self.contract.connection.close()
        self.journal.close()


async def resolve_oracle_secret(
    config: OracleConfig,
    secret: Optional[str] = None,
    kms: Optional[RoflClient] = None,
) -> str:
    """ORACLE_SECRET first, then an explicit secret, then the key-custody service."""
    if config.settings.oracle_secret:
        return config.settings.oracle_secret
    if secret:
        return secret
    if kms is None:
        raise OracleError("No oracle secret configured and no key-custody service available")
    logger.info("oracle_key_requested", key_id=config.settings.key_id)
    return await kms.generate_key(config.settings.key_id)


async def ensure_oracle_registered(
    contract: BridgeContract,
    account: LocalAccount,
    kms: Optional[RoflClient],
    checks: int = ORACLE_REGISTRATION_CHECKS,
    delay: float = ORACLE_REGISTRATION_DELAY_SECONDS,
) -> bool:
    """
    Make `account` the contract's oracle.

    Returns True if a setOracle transaction was submitted, False if the
    account was already registered.
    """
    current = await contract.oracle()
    if current.lower() == account.address.lower():
        logger.info("oracle_already_registered", oracle=account.address)
        return False
    if kms is None:
        raise OracleError(f"Contract oracle is {current}, not {account.address}, and no key-custody service is available")

    logger.info("oracle_registering", current=current, oracle=account.address)
    data = contract.encode_call("setOracle", account.address)
    await kms.submit_tx(contract.address, data, SET_ORACLE_GAS_LIMIT)

    for _ in range(checks):
        current = await contract.oracle()
        if current.lower() == account.address.lower():
            logger.info("oracle_registered", oracle=account.address)
            return True
        await asyncio.sleep(delay)
    raise OracleError(f"setOracle submitted but contract oracle is still {current}")


async def create_oracle(
    config: OracleConfig,
    secret: Optional[str] = None,
    kms: Optional[RoflClient] = None,
    web3_factory: Web3Factory = default_web3_factory,
    journal: Optional[BurnJournal] = None,
    start_block: Optional[int] = None,
) -> TrustlessBridgeOracle:
    """Connect to the chain, register the oracle key and wire all components."""
    settings = config.settings
    if not settings.contract_address:
        raise OracleError("CONTRACT_ADDRESS is not configured")

    account: LocalAccount = Account.from_key(await resolve_oracle_secret(config, secret, kms))

    connection = ConnectionManager(config.sapphire_rpc_urls, web3_factory)
    await connection.connect()
    contract = BridgeContract(connection, settings.contract_address, account)

    await ensure_oracle_registered(contract, account, kms)

    tracked = TrackedAddress(await contract.bitcoin_address(), get_network(settings.bitcoin_network))
    providers = [connection.get_provider(p, tracked) for p in config.registry]
    gateway = BitcoinGateway(providers)

    return TrustlessBridgeOracle(
        config=config,
        contract=contract,
        tracked=tracked,
        fetcher=ConsensusFetcher(providers, settings.min_agreeing_providers),
        builder=TransactionBuilder(tracked, gateway, FeePlanner(providers, settings.bitcoin_network)),
        broadcaster=Broadcaster(gateway),
        signer=RemoteSigner(contract, account),
        journal=journal or BurnJournal(settings.database_url),
        poller=EventPoller(contract, start_block),
    )

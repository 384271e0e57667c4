"""
CLI entry point for the Trustless Bridge Oracle.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .address import get_network
from .config import OracleConfig
from .consensus import ConsensusFetcher
from .connection import ConnectionManager
from .errors import OracleError
from .facts import TrackedAddress
from .kms import RoflClient
from .oracle import create_oracle
from .signmessage import verify_message


def configure_logging(level: str = "INFO") -> None:
    """Console logging with ISO timestamps, filtered at `level`."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


app = typer.Typer(
    name="trustless-oracle",
    help="Trustless Bridge Bitcoin Oracle",
    add_completion=False,
)


async def _run_oracle(config: OracleConfig, secret: Optional[str], once: bool, from_block: Optional[int]) -> None:
    settings = config.settings
    kms = RoflClient(settings.kms_url)
    oracle = await create_oracle(config, secret=secret, kms=kms, start_block=from_block)

    try:
        if once:
            events = await oracle.run_once()
            typer.echo(f"Processed {len(events)} events")
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, oracle.stop)
        await oracle.run()
    finally:
        await oracle.close()
        await kms.close()


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    contract_address: Optional[str] = typer.Option(
        None,
        "--contract-address",
        help="Bridge contract address",
    ),
    network: Optional[str] = typer.Option(
        None,
        "--network",
        "-n",
        help="Chain to connect to (sapphire, sapphire-testnet, sapphire-localnet)",
    ),
    bitcoin_network: Optional[str] = typer.Option(
        None,
        "--bitcoin-network",
        "-b",
        help="Bitcoin network (mainnet, testnet, regtest)",
    ),
    kms_url: Optional[str] = typer.Option(None, "--kms", "-k", help="Override ROFL's appd service URL"),
    key_id: Optional[str] = typer.Option(None, "--key-id", "-i", help="Oracle secret key ID on KMS"),
    secret: Optional[str] = typer.Option(
        None,
        "--secret",
        "-s",
        help="Secret key of the oracle account (only for testing)",
    ),
    sapphire_rpc: Optional[str] = typer.Option(None, "--sapphire-rpc", help="Comma-separated Sapphire RPC URLs"),
    bitcoin_rpc: Optional[str] = typer.Option(None, "--bitcoin-rpc", help="JSON list of Bitcoin RPC nodes"),
    bitcoin_api_configs: Optional[str] = typer.Option(
        None,
        "--bitcoin-api-configs",
        help='JSON list of Esplora APIs, e.g. \'[{"url":"https://mempool.space/api","name":"Mempool","priority":1}]\'',
    ),
    from_block: Optional[int] = typer.Option(
        None,
        "--from-block",
        help="First EVM block to scan for events (default: current head)",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single poll cycle and exit (useful for testing)",
    ),
) -> None:
    """
    Start the oracle: mint for proven deposits and pay out burns.
    """
    try:
        config = OracleConfig.from_env(
            config_path,
            contract_address=contract_address,
            network=network,
            bitcoin_network=bitcoin_network,
            kms_url=kms_url,
            key_id=key_id,
            sapphire_rpc_urls=sapphire_rpc,
            bitcoin_rpc_nodes=bitcoin_rpc,
            bitcoin_api_configs=bitcoin_api_configs,
        )
    except ValueError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2)

    settings = config.settings
    configure_logging(settings.log_level)

    typer.echo(
        f"Starting oracle. Contract: {settings.contract_address}, "
        f"Network: {settings.network}, Bitcoin: {settings.bitcoin_network}"
    )

    try:
        asyncio.run(_run_oracle(config, secret, once, from_block))
    except (OracleError, ValueError) as e:
        typer.echo(f"Error running oracle: {e}", err=True)
        raise typer.Exit(code=1)


async def _check_tx(config: OracleConfig, txid: str, address: str) -> None:
    tracked = TrackedAddress(address, get_network(config.settings.bitcoin_network))
    connection = ConnectionManager(config.sapphire_rpc_urls)
    providers = [connection.get_provider(p, tracked) for p in config.registry]
    try:
        facts = await ConsensusFetcher(providers, config.settings.min_agreeing_providers).fetch(txid)
    finally:
        await connection.close()

    typer.echo(f"  TXID: {facts.tx_hash}")
    typer.echo(f"  Provider: {facts.provider}")
    typer.echo(f"  Paid to {address}: {facts.receiver_is_tracked}")
    typer.echo(f"  Amount: {facts.amount_sats} sats ({facts.amount_sats / 1e8:.8f} BTC)")
    typer.echo(f"  Senders: {', '.join(sorted(facts.senders)) or '-'}")
    typer.echo(f"  Block: {facts.block_height}")
    typer.echo(f"  Confirmations: {facts.confirmations}")


@app.command("check-tx")
def check_tx(
    txid: str = typer.Argument(..., help="Bitcoin transaction id"),
    address: str = typer.Option(..., "--address", "-a", help="Bridge Bitcoin address"),
    bitcoin_network: Optional[str] = typer.Option(None, "--bitcoin-network", "-b", help="Bitcoin network"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to .env configuration file"),
) -> None:
    """
    Look up a transaction across all providers (without minting).
    """
    typer.echo(f"Checking transaction: {txid}")
    try:
        config = OracleConfig.from_env(config_path, bitcoin_network=bitcoin_network)
        configure_logging(config.settings.log_level)
        asyncio.run(_check_tx(config, txid, address))
    except (OracleError, ValueError) as e:
        typer.echo(f"Lookup failed: {e}", err=True)
        raise typer.Exit(code=1)


@app.command("verify-message")
def verify_message_command(
    message: str = typer.Argument(..., help="Signed message text"),
    signature: str = typer.Argument(..., help="Base64 signature"),
    address: str = typer.Argument(..., help="Bitcoin address of the signer"),
    bitcoin_network: str = typer.Option("testnet", "--bitcoin-network", "-b", help="Bitcoin network"),
) -> None:
    """
    Verify a Bitcoin signed message (BIP-137).
    """
    if verify_message(message, signature, address, get_network(bitcoin_network)):
        typer.echo("Signature is valid")
    else:
        typer.echo("Signature is NOT valid")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show the oracle version."""
    from trustless_oracle import __version__
    typer.echo(f"trustless-oracle v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
